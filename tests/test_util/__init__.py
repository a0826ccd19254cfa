import sys

from io import StringIO
from typing import Generator, Any
from contextlib import contextmanager

import qsym


@contextmanager
def CaptureStdout() -> Generator[StringIO, None, None]:
    save_stdout = sys.stdout
    out = StringIO()
    sys.stdout = out
    try:
        yield out
    finally:
        sys.stdout = save_stdout


@contextmanager
def CaptureStderr() -> Generator[StringIO, None, None]:
    save_stderr = sys.stderr
    out = StringIO()
    sys.stderr = out
    try:
        yield out
    finally:
        sys.stderr = save_stderr


@contextmanager
def FreshEnv(**settings: Any) -> Generator[qsym.SymEnvironment, None, None]:
    env = qsym.SymEnvironment()
    for name, value in settings.items():
        assert qsym.SymEnvironment.is_option(name), name
        setattr(env, name, value)

    with qsym.CurrentEnvironment(env):
        yield env


def symex_text(text: str, function_name: str = 'main', **settings: Any
               ) -> tuple[str, qsym.ExplorationSummary]:
    program = qsym.parse_program(text)
    with FreshEnv(**settings), CaptureStdout() as out:
        summary = qsym.symex_function(program, function_name)

    return out.getvalue(), summary

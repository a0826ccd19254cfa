#!/usr/bin/env python3
# This program is released under Prosperity Public License 3.0.0
# The text of the license follows:
"""
# The Prosperity Public License 3.0.0

Contributor: Dmitry Petukhov (https://github.com/dgpv), dp@bsst.dev

Source Code: https://github.com/dgpv/bsst

qsym, the symbolic executor for QBE IL in this module, is a derived work of
B'SST (the source code referenced above) and is distributed under the same
license.

## Purpose

This license allows you to use and share this software for noncommercial
purposes for free and to try this software for commercial purposes for thirty
days.

## Agreement

In order to receive this license, you have to agree to its rules.
Those rules are both obligations under that agreement and conditions to your
license.  Don't do anything with this software that triggers a rule you can't
or won't follow.

## Notices

Make sure everyone who gets a copy of any part of this software from you, with
or without changes, also gets the text of this license and the contributor and
source code lines above.

## Commercial Trial

Limit your use of this software for commercial purposes to a thirty-day trial
period.  If you use this software for work, your company gets one trial period
for all personnel, not one trial per person.

## Contributions Back

Developing feedback, changes, or additions that you contribute back to the
contributor on the terms of a standardized public software license such as
[the Blue Oak Model License 1.0.0](https://blueoakcouncil.org/license/1.0.0),
[the Apache License 2.0](https://www.apache.org/licenses/LICENSE-2.0.html),
[the MIT license](https://spdx.org/licenses/MIT.html), or
[the two-clause BSD license](https://spdx.org/licenses/BSD-2-Clause.html)
doesn't count as use for a commercial purpose.

## Personal Uses

Personal use for research, experiment, and testing for the benefit of public
knowledge, personal study, private entertainment, hobby projects, amateur
pursuits, or religious observance, without any anticipated commercial
application, doesn't count as use for a commercial purpose.

## Noncommercial Organizations

Use by any charitable organization, educational institution, public research
organization, public safety or health organization, environmental protection
organization, or government institution doesn't count as use for a commercial
purpose regardless of the source of funding or obligations resulting from the
funding.

## Defense

Don't make any legal claim against anyone accusing this software, with or
without changes, alone or with other technology, of infringing any patent.

## Copyright

The contributor licenses you to do everything with this software that would
otherwise infringe their copyright in it.

## Patent

The contributor licenses you to do everything with this software that would
otherwise infringe any patents they can license or become able to license.

## Reliability

The contributor can't revoke this license.

## Excuse

You're excused for unknowingly breaking [Notices](#notices) if you take all
practical steps to comply within thirty days of learning you broke the rule.

## No Liability

AS FAR AS THE LAW ALLOWS, THIS SOFTWARE COMES AS IS, WITHOUT ANY WARRANTY
OR CONDITION, AND THE CONTRIBUTOR WON'T BE LIABLE TO ANYONE FOR ANY DAMAGES
RELATED TO THIS SOFTWARE OR THIS LICENSE, UNDER ANY KIND OF LEGAL CLAIM.
"""

# NOTE: z3 python module does not ship with typing, so all z3 types given
# in the annotations below are effectively 'Any'

# pylama:ignore=E501,E272

import os
import re
import sys
import enum
import types
import weakref
import itertools

from typing import TextIO, Mapping
from dataclasses import dataclass, field, replace
from functools import cached_property
from contextlib import contextmanager

from typing import (
    Optional, Union, Callable, Iterable, NoReturn, TypeVar, Any, Generator
)

import z3

BYTE_SIZE = 8
HALF_SIZE = 16
WORD_SIZE = 32
LONG_SIZE = 64

BASE_TYPE_WIDTHS = {'w': WORD_SIZE, 'l': LONG_SIZE}
EXT_TYPE_WIDTHS = {'b': BYTE_SIZE, 'h': HALF_SIZE,
                   'w': WORD_SIZE, 'l': LONG_SIZE}
SUBWORD_TYPES = {'sb': (BYTE_SIZE, True), 'ub': (BYTE_SIZE, False),
                 'sh': (HALF_SIZE, True), 'uh': (HALF_SIZE, False)}
ABI_TYPES = ('w', 'l', 's', 'd', 'sb', 'ub', 'sh', 'uh')
ASSIGN_TYPES = ('w', 'l', 's', 'd')
DATA_ITEM_TYPES = ('b', 'h', 'w', 'l', 'z')

# Functions are not kept in memory, each one gets a slot holding this pattern
FUNC_PATTERN = 0xdeadbeef
FUNC_SLOT_SIZE = 4

DEFAULT_DATA_ALIGN = 8
STACK_BASE = 0x7fff0000


class QSymError(Exception):
    ...


class QSymInputError(QSymError):
    ...


class QSymParsingError(QSymError):
    ...


class QSymUnknownFunctionError(QSymError):
    ...


class QSymUnsupportedError(QSymError):
    ...


class QSymSolvingError(QSymError):
    ...


class PathErrorKind(enum.Enum):
    UNSUPPORTED_OPCODE = 'unsupported opcode'
    UNDEFINED_VARIABLE = 'undefined variable'
    WIDTH_MISMATCH = 'width mismatch'
    UNKNOWN_LABEL = 'unknown label'
    MISSING_JUMP = 'missing jump'
    DIVISION_BY_ZERO = 'division by zero'
    MEMORY_ACCESS = 'invalid memory access'


class PathFailure(Exception):
    """Abandons the execution path it was raised on. The rest of the run
    continues with other pending states"""

    def __init__(self, kind: PathErrorKind, msg: str) -> None:
        super().__init__(msg)
        self.kind = kind


class SymEnvironment:

    @property
    def input_file(self) -> str:
        """The file with QBE IL source to analyze. The dash "-" means STDIN
        """
        return self._input_file

    @input_file.setter
    def input_file(self, value: str) -> None:
        if not value:
            raise ValueError('input file name must not be empty')

        self._input_file = value

    @property
    def entry_function(self) -> str:
        """The function to execute symbolically. Its parameters become
        unconstrained symbolic values, named as "function:parameter".
        The "$" sigil in front of the name is optional
        """
        return self._entry_function

    @entry_function.setter
    def entry_function(self, value: str) -> None:
        if value.startswith('$'):
            value = value[1:]

        if not value:
            raise ValueError('function name must not be empty')

        if re.search('\\s', value):
            raise ValueError('no whitespace is allowed in function name')

        self._entry_function = value

    @property
    def produce_model_values(self) -> bool:
        """Produce 'model values' for the symbolic parameters referenced
        on each halted path. Model values are the values that, when given
        to the entry function, make it take that path
        """
        return self._produce_model_values

    @produce_model_values.setter
    def produce_model_values(self, value: bool) -> None:
        self._produce_model_values = value

    @property
    def report_path_errors(self) -> bool:
        """Show a diagnostic for each path that had to be abandoned because
        of unsupported instructions, reads of undefined variables or memory,
        and similar per-path errors. Such paths are skipped silently
        when this is false
        """
        return self._report_path_errors

    @report_path_errors.setter
    def report_path_errors(self, value: bool) -> None:
        self._report_path_errors = value

    @property
    def simplify_symbolic_values(self) -> bool:
        """Simplify symbolic values with Z3 before showing them in the report.
        If false, the values are shown exactly as they were built
        """
        return self._simplify_symbolic_values

    @simplify_symbolic_values.setter
    def simplify_symbolic_values(self, value: bool) -> None:
        self._simplify_symbolic_values = value

    @property
    def log_progress(self) -> bool:
        """Log the progress of exploration: states taken from the worklist,
        forks, and the outcome of each path
        """
        return self._log_progress

    @log_progress.setter
    def log_progress(self, value: bool) -> None:
        self._log_progress = value

    @property
    def log_solving_attempts(self) -> bool:
        """Log each query to the solver along with its result
        """
        return self._log_solving_attempts

    @log_solving_attempts.setter
    def log_solving_attempts(self, value: bool) -> None:
        self._log_solving_attempts = value

    @property
    def log_to_stderr(self) -> bool:
        """Send the log enabled by `log_progress` and `log_solving_attempts`
        to STDERR. If false, the log is interleaved with the report on STDOUT
        """
        return self._log_to_stderr

    @log_to_stderr.setter
    def log_to_stderr(self, value: bool) -> None:
        self._log_to_stderr = value

    def __init__(self) -> None:
        self._input_file = '-'
        self._entry_function = 'main'
        self._produce_model_values = True
        self._report_path_errors = True
        self._simplify_symbolic_values = True
        self._log_progress = False
        self._log_solving_attempts = False
        self._log_to_stderr = True

        self._last_output_chars: dict[TextIO, str] = {}

    @classmethod
    def is_option(cls, name: str) -> bool:
        return bool(not name.startswith('_')
                    and name in cls.__dict__.keys()
                    and isinstance(getattr(cls, name), property)
                    and getattr(cls, name).__doc__)

    def write_out(self, msg: str, f: TextIO) -> None:
        if msg:
            locs = self._last_output_chars.get(f)
            if locs is None:
                locs = '  '

            if len(msg) == 1:
                locs = locs[1] + msg[-1]
            else:
                locs = msg[-2:]

            self._last_output_chars[f] = locs

            f.write(msg)
            f.flush()

    def write(self, msg: str) -> None:
        self.write_out(msg, sys.stdout)

    def write_line(self, msg: str) -> None:
        assert not msg.endswith('\n')
        self.write(f'{msg}\n')

    def ensure_newline(self) -> None:
        self.ensure_newline_out(sys.stdout)

    def ensure_newline_out(self, f: TextIO) -> None:
        locs = self._last_output_chars.get(f)
        if locs is not None and locs[-1] != '\n':
            self.write_out('\n', f)

    def ensure_empty_line(self) -> None:
        self.ensure_empty_line_out(sys.stdout)

    def ensure_empty_line_out(self, f: TextIO) -> None:
        locs = self._last_output_chars.get(f)

        if locs is None or locs == '\n\n':
            return

        if locs[-1] == '\n':
            self.write_out('\n', f)
        else:
            self.write_out('\n\n', f)

    def log_stream(self) -> TextIO:
        return sys.stderr if self.log_to_stderr else sys.stdout

    def log(self, msg: str) -> None:
        self.write_out(msg, self.log_stream())

    def log_line(self, msg: str) -> None:
        assert not msg.endswith('\n')
        self.ensure_newline_out(self.log_stream())
        self.log(f'{msg}\n')

    def progress_log_line(self, msg: str) -> None:
        if self.log_progress:
            self.log_line(msg)

    def solving_log_line(self, msg: str) -> None:
        if self.log_solving_attempts:
            self.log_line(msg)


g_current_sym_environment: SymEnvironment | None = None


@contextmanager
def CurrentEnvironment(env: Optional['SymEnvironment']) -> Generator[None, None, None]:
    global g_current_sym_environment

    prev_env = g_current_sym_environment
    g_current_sym_environment = env
    try:
        yield
    finally:
        g_current_sym_environment = prev_env


def cur_env() -> 'SymEnvironment':
    global g_current_sym_environment
    assert g_current_sym_environment is not None
    return g_current_sym_environment


def bitmask(width: int) -> int:
    return (1 << width) - 1


def to_signed(bits: int, width: int) -> int:
    if bits >> (width - 1):
        return bits - (1 << width)

    return bits


def align_up(v: int, alignment: int) -> int:
    return (v + alignment - 1) // alignment * alignment


def format_bits(bits: int, width: int) -> str:
    if width % 4 == 0:
        return f'#x{bits:0{width // 4}x}'

    return f'#b{bits:0{width}b}'


def qualified_name(function_name: str, var_name: str) -> str:
    return f'{function_name}:{var_name}'


def width_mismatch(msg: str) -> NoReturn:
    raise PathFailure(PathErrorKind.WIDTH_MISMATCH, msg)


BINARY_OPS = ('bvadd', 'bvsub', 'bvmul', 'bvsdiv', 'bvudiv', 'bvsrem',
              'bvurem', 'bvand', 'bvor', 'bvxor', 'bvshl', 'bvlshr', 'bvashr')
UNARY_OPS = ('bvneg', 'bvnot', 'zero_extend', 'sign_extend', 'extract')
COMPARISON_OPS = ('=', 'distinct', 'bvslt', 'bvsle', 'bvsgt', 'bvsge',
                  'bvult', 'bvule', 'bvugt', 'bvuge')


class Expression:
    """Immutable bitvector term.

    Nodes compare structurally. The mk_* constructors intern them, so that
    equal subterms are the same object no matter how many states refer
    to them, and comparison of interned children is an identity check.
    Comparison nodes are 1 bit wide, and stand for booleans
    """

    width: int

    def _fields(self) -> tuple[Any, ...]:
        raise NotImplementedError

    @cached_property
    def _hash_value(self) -> int:
        return hash((type(self).__name__, self._fields()))

    def __hash__(self) -> int:
        return self._hash_value

    def __eq__(self, other: object) -> bool:
        if self is other:
            return True

        if type(self) is not type(other):
            return False

        assert isinstance(other, Expression)
        return (self._hash_value == other._hash_value
                and self._fields() == other._fields())

    def sexpr(self) -> str:
        raise NotImplementedError


def value_sexpr(e: Expression) -> str:
    if isinstance(e, Cmp):
        return f'(ite {e.sexpr()} #b1 #b0)'

    return e.sexpr()


@dataclass(frozen=True, eq=False)
class Var(Expression):
    name: str
    width: int

    def _fields(self) -> tuple[Any, ...]:
        return (self.name, self.width)

    def sexpr(self) -> str:
        return f'|{self.name}|'


@dataclass(frozen=True, eq=False)
class Const(Expression):
    bits: int
    width: int

    def _fields(self) -> tuple[Any, ...]:
        return (self.bits, self.width)

    def sexpr(self) -> str:
        return format_bits(self.bits, self.width)


@dataclass(frozen=True, eq=False)
class BinOp(Expression):
    op: str
    left: Expression
    right: Expression

    @property
    def width(self) -> int:  # type: ignore
        return self.left.width

    def _fields(self) -> tuple[Any, ...]:
        return (self.op, self.left, self.right)

    def sexpr(self) -> str:
        return f'({self.op} {value_sexpr(self.left)} {value_sexpr(self.right)})'


@dataclass(frozen=True, eq=False)
class UnOp(Expression):
    op: str
    operand: Expression
    width: int

    def _fields(self) -> tuple[Any, ...]:
        return (self.op, self.operand, self.width)

    def sexpr(self) -> str:
        arg = value_sexpr(self.operand)
        if self.op in ('zero_extend', 'sign_extend'):
            return f'((_ {self.op} {self.width - self.operand.width}) {arg})'

        if self.op == 'extract':
            return f'((_ extract {self.width - 1} 0) {arg})'

        return f'({self.op} {arg})'


@dataclass(frozen=True, eq=False)
class Cmp(Expression):
    op: str
    left: Expression
    right: Expression

    @property
    def width(self) -> int:  # type: ignore
        return 1

    def _fields(self) -> tuple[Any, ...]:
        return (self.op, self.left, self.right)

    def sexpr(self) -> str:
        return f'({self.op} {value_sexpr(self.left)} {value_sexpr(self.right)})'


# Keyed by the node's fields, never by the node, so that an entry goes away
# together with the last outside reference to its node
g_expression_table: 'weakref.WeakValueDictionary[tuple[Any, ...], Expression]' = \
    weakref.WeakValueDictionary()

E = TypeVar('E', bound=Expression)


def intern_expr(e: E) -> E:
    key = (type(e).__name__, e._fields())
    existing = g_expression_table.get(key)
    if existing is not None:
        assert isinstance(existing, type(e))
        return existing

    g_expression_table[key] = e
    return e


def mk_var(name: str, width: int) -> Var:
    if width <= 0:
        raise ValueError('variable width must be positive')

    return intern_expr(Var(name, width))


def mk_const(bits: int, width: int) -> Const:
    if width <= 0:
        raise ValueError('constant width must be positive')

    return intern_expr(Const(bits & bitmask(width), width))


def mk_binop(op: str, left: Expression, right: Expression) -> BinOp:
    if op not in BINARY_OPS:
        raise ValueError(f'unknown binary operator {op}')

    if left.width != right.width:
        width_mismatch(f'{op} applied to {left.width}-bit '
                       f'and {right.width}-bit values')

    return intern_expr(BinOp(op, left, right))


def mk_unop(op: str, operand: Expression, width: Optional[int] = None) -> UnOp:
    if op not in UNARY_OPS:
        raise ValueError(f'unknown unary operator {op}')

    if width is None:
        width = operand.width

    if op in ('zero_extend', 'sign_extend'):
        if width <= operand.width:
            width_mismatch(f'cannot extend {operand.width}-bit value '
                           f'to {width} bits')
    elif op == 'extract':
        if width >= operand.width:
            width_mismatch(f'cannot truncate {operand.width}-bit value '
                           f'to {width} bits')
    elif width != operand.width:
        width_mismatch(f'{op} cannot change width of the value')

    return intern_expr(UnOp(op, operand, width))


def mk_cmp(op: str, left: Expression, right: Expression) -> Cmp:
    if op not in COMPARISON_OPS:
        raise ValueError(f'unknown comparison operator {op}')

    if left.width != right.width:
        width_mismatch(f'{op} applied to {left.width}-bit '
                       f'and {right.width}-bit values')

    return intern_expr(Cmp(op, left, right))


def free_vars(exprs: Iterable[Expression]) -> set[Var]:
    result: set[Var] = set()
    seen: set[Expression] = set()
    todo = list(exprs)
    while todo:
        e = todo.pop()
        if e in seen:
            continue

        seen.add(e)

        if isinstance(e, Var):
            result.add(e)
        elif isinstance(e, (BinOp, Cmp)):
            todo.append(e.left)
            todo.append(e.right)
        elif isinstance(e, UnOp):
            todo.append(e.operand)

    return result


def eval_binop(op: str, a: int, b: int, width: int) -> int:  # noqa
    if op == 'bvadd':
        r = a + b
    elif op == 'bvsub':
        r = a - b
    elif op == 'bvmul':
        r = a * b
    elif op in ('bvsdiv', 'bvsrem'):
        sa = to_signed(a, width)
        sb = to_signed(b, width)
        if sb == 0:
            raise PathFailure(PathErrorKind.DIVISION_BY_ZERO,
                              'division by zero')
        # truncating division, remainder takes the sign of the dividend
        q = abs(sa) // abs(sb)
        if (sa < 0) != (sb < 0):
            q = -q

        r = q if op == 'bvsdiv' else sa - sb * q
    elif op in ('bvudiv', 'bvurem'):
        if b == 0:
            raise PathFailure(PathErrorKind.DIVISION_BY_ZERO,
                              'division by zero')
        r = a // b if op == 'bvudiv' else a % b
    elif op == 'bvand':
        r = a & b
    elif op == 'bvor':
        r = a | b
    elif op == 'bvxor':
        r = a ^ b
    elif op == 'bvshl':
        r = a << b if b < width else 0
    elif op == 'bvlshr':
        r = a >> b if b < width else 0
    elif op == 'bvashr':
        r = to_signed(a, width) >> min(b, width)
    else:
        raise ValueError(f'unknown binary operator {op}')

    return r & bitmask(width)


def eval_unop(op: str, a: int, from_width: int, width: int) -> int:
    if op == 'bvneg':
        r = -a
    elif op == 'bvnot':
        r = ~a
    elif op == 'sign_extend':
        r = to_signed(a, from_width)
    elif op in ('zero_extend', 'extract'):
        r = a
    else:
        raise ValueError(f'unknown unary operator {op}')

    return r & bitmask(width)


def eval_cmp(op: str, a: int, b: int, width: int) -> bool:  # noqa
    if op == '=':
        return a == b
    elif op == 'distinct':
        return a != b
    elif op in ('bvult', 'bvule', 'bvugt', 'bvuge'):
        pass
    elif op in ('bvslt', 'bvsle', 'bvsgt', 'bvsge'):
        a = to_signed(a, width)
        b = to_signed(b, width)
    else:
        raise ValueError(f'unknown comparison operator {op}')

    if op in ('bvult', 'bvslt'):
        return a < b
    elif op in ('bvule', 'bvsle'):
        return a <= b
    elif op in ('bvugt', 'bvsgt'):
        return a > b

    return a >= b


class SymbolicValue:
    width: int

    def as_expr(self) -> Expression:
        raise NotImplementedError


@dataclass(frozen=True)
class Concrete(SymbolicValue):
    bits: int
    width: int

    def __post_init__(self) -> None:
        if not 0 <= self.bits <= bitmask(self.width):
            raise ValueError(
                f'value {self.bits} does not fit into {self.width} bits')

    def as_expr(self) -> Expression:
        return mk_const(self.bits, self.width)

    def __str__(self) -> str:
        return format_bits(self.bits, self.width)


@dataclass(frozen=True)
class Symbolic(SymbolicValue):
    expr: Expression

    @property
    def width(self) -> int:  # type: ignore
        return self.expr.width

    def as_expr(self) -> Expression:
        return self.expr

    def __str__(self) -> str:
        return value_sexpr(self.expr)


def make_concrete(v: int, width: int) -> Concrete:
    return Concrete(v & bitmask(width), width)


def sym_binop(op: str, a: SymbolicValue, b: SymbolicValue) -> SymbolicValue:
    if a.width != b.width:
        width_mismatch(f'{op} applied to {a.width}-bit and {b.width}-bit values')

    if isinstance(a, Concrete) and isinstance(b, Concrete):
        return Concrete(eval_binop(op, a.bits, b.bits, a.width), a.width)

    return Symbolic(mk_binop(op, a.as_expr(), b.as_expr()))


def sym_unop(op: str, a: SymbolicValue, width: Optional[int] = None
             ) -> SymbolicValue:
    if isinstance(a, Concrete):
        # checks the widths the same way as for symbolic values
        e = mk_unop(op, a.as_expr(), width)
        return Concrete(eval_unop(op, a.bits, a.width, e.width), e.width)

    return Symbolic(mk_unop(op, a.as_expr(), width))


def sym_cmp(op: str, a: SymbolicValue, b: SymbolicValue) -> SymbolicValue:
    if a.width != b.width:
        width_mismatch(f'{op} applied to {a.width}-bit and {b.width}-bit values')

    if isinstance(a, Concrete) and isinstance(b, Concrete):
        return Concrete(int(eval_cmp(op, a.bits, b.bits, a.width)), 1)

    return Symbolic(mk_cmp(op, a.as_expr(), b.as_expr()))


def sym_extend(v: SymbolicValue, width: int, is_signed: bool) -> SymbolicValue:
    if v.width == width:
        return v

    if v.width > width:
        width_mismatch(f'{v.width}-bit value cannot be extended to {width} bits')

    return sym_unop('sign_extend' if is_signed else 'zero_extend', v, width)


@dataclass(frozen=True)
class Temp:
    name: str

    def __str__(self) -> str:
        return f'%{self.name}'


@dataclass(frozen=True)
class IntConst:
    value: int

    def __str__(self) -> str:
        return str(self.value)


@dataclass(frozen=True)
class GlobalRef:
    name: str

    def __str__(self) -> str:
        return f'${self.name}'


@dataclass(frozen=True)
class FloatConst:
    text: str

    def __str__(self) -> str:
        return self.text


Operand = Union[Temp, IntConst, GlobalRef, FloatConst]


@dataclass(frozen=True)
class Instruction:
    line_no: int = field(default=0, kw_only=True, compare=False)
    text: str = field(default='', kw_only=True, compare=False)


@dataclass(frozen=True)
class Assign(Instruction):
    dest: str
    type: str
    opcode: str
    args: tuple[Operand, ...]


@dataclass(frozen=True)
class Store(Instruction):
    opcode: str
    value: Operand
    address: Operand


@dataclass(frozen=True)
class Call(Instruction):
    dest: Optional[str]
    type: Optional[str]
    target: Operand
    args: tuple[tuple[str, Operand], ...]


@dataclass(frozen=True)
class Volatile(Instruction):
    opcode: str
    args: tuple[Operand, ...]


@dataclass(frozen=True)
class Phi(Instruction):
    dest: str
    type: str
    incoming: tuple[tuple[str, Operand], ...]


@dataclass(frozen=True)
class Jmp(Instruction):
    label: str


@dataclass(frozen=True)
class Jnz(Instruction):
    test: Operand
    if_true: str
    if_false: str


@dataclass(frozen=True)
class Ret(Instruction):
    value: Optional[Operand]


@dataclass(frozen=True)
class Hlt(Instruction):
    ...


Jump = Union[Jmp, Jnz, Ret, Hlt]


@dataclass(frozen=True)
class Block:
    label: str
    phis: tuple[Phi, ...]
    instructions: tuple[Instruction, ...]
    jump: Optional[Jump]
    line_no: int = 0


@dataclass(frozen=True)
class Param:
    type: str
    name: str


@dataclass(frozen=True)
class Function:
    name: str
    params: tuple[Param, ...]
    blocks: tuple[Block, ...]
    return_type: Optional[str] = None
    is_export: bool = False
    line_no: int = 0

    @cached_property
    def block_index(self) -> dict[str, int]:
        return {b.label: i for i, b in enumerate(self.blocks)}

    def get_block(self, label: str) -> Optional[Block]:
        idx = self.block_index.get(label)
        if idx is None:
            return None

        return self.blocks[idx]

    def next_block(self, label: str) -> Optional[Block]:
        idx = self.block_index[label] + 1
        if idx < len(self.blocks):
            return self.blocks[idx]

        return None


@dataclass(frozen=True)
class SymbolOffset:
    name: str
    offset: int = 0


DataValue = Union[int, bytes, SymbolOffset]


@dataclass(frozen=True)
class DataItem:
    type: str
    values: tuple[DataValue, ...]

    def size(self) -> int:
        if self.type == 'z':
            v = self.values[0]
            assert isinstance(v, int)
            return v

        item_size = EXT_TYPE_WIDTHS[self.type] // 8
        return sum(len(v) if isinstance(v, bytes) else item_size
                   for v in self.values)


@dataclass(frozen=True)
class DataDef:
    name: str
    items: tuple[DataItem, ...]
    align: Optional[int] = None
    line_no: int = 0

    def size(self) -> int:
        return sum(item.size() for item in self.items)


@dataclass
class Program:
    functions: dict[str, Function] = field(default_factory=dict)
    data: dict[str, DataDef] = field(default_factory=dict)
    types: list[str] = field(default_factory=list)


TOKEN_RE = re.compile(r'''
    (?P<space>[ \t\r\f\v]+)
  | (?P<comment>\#[^\n]*)
  | (?P<newline>\n)
  | (?P<string>"(?:[^"\\\n]|\\.)*")
  | (?P<float>[sd]_[-+]?(?:[0-9]+\.?[0-9]*(?:[eE][-+]?[0-9]+)?|nan|inf))
  | (?P<temp>%[\w.$]+)
  | (?P<label>@[\w.$]+)
  | (?P<global>\$[\w.$]+)
  | (?P<type>:[\w.$]+)
  | (?P<integer>-?[0-9]+)
  | (?P<ident>[A-Za-z_][\w.]*)
  | (?P<punct>\.\.\.|[{}(),=+])
''', re.X)


@dataclass(frozen=True)
class Token:
    kind: str
    text: str
    line_no: int


def parsing_error(line_no: int, msg: str) -> NoReturn:
    msg = re.sub(r'[\x00-\x1F]', '?', msg)
    raise QSymParsingError(f'ERROR at line {line_no}: {msg}')


def tokenize(text: str) -> list[Token]:
    tokens: list[Token] = []
    line_no = 1
    pos = 0
    while pos < len(text):
        m = TOKEN_RE.match(text, pos)
        if m is None:
            parsing_error(line_no, f'unexpected character {text[pos]!r}')

        kind = m.lastgroup
        assert kind is not None
        if kind == 'newline':
            tokens.append(Token(kind, '\n', line_no))
            line_no += 1
        elif kind not in ('space', 'comment'):
            tokens.append(Token(kind, m.group(), line_no))

        pos = m.end()

    tokens.append(Token('eof', '', line_no))
    return tokens


def decode_string_literal(text: str, line_no: int) -> bytes:
    try:
        return text[1:-1].encode('utf-8').decode('unicode_escape').encode('latin-1')
    except (UnicodeDecodeError, UnicodeEncodeError):
        parsing_error(line_no, f'invalid string literal {text}')


class ILParser:
    """Reads the text of QBE IL into a Program.

    Newlines are insignificant between definitions and inside data
    definitions, but terminate statements inside function bodies"""

    def __init__(self, text: str) -> None:
        self.lines = text.split('\n')
        self.tokens = tokenize(text)
        self.pos = 0

    def die(self, msg: str, tok: Optional[Token] = None) -> NoReturn:
        parsing_error((tok or self.peek()).line_no, msg)

    def peek(self) -> Token:
        return self.tokens[self.pos]

    def next(self) -> Token:
        tok = self.tokens[self.pos]
        if tok.kind != 'eof':
            self.pos += 1

        return tok

    def accept(self, kind: str, text: Optional[str] = None) -> Optional[Token]:
        tok = self.peek()
        if tok.kind == kind and (text is None or tok.text == text):
            return self.next()

        return None

    def expect(self, kind: str, text: Optional[str] = None) -> Token:
        tok = self.accept(kind, text)
        if tok is None:
            got = self.peek()
            what = repr(text) if text else kind
            self.die(f'expected {what}, got '
                     f'{repr(got.text) if got.kind != "eof" else "end of input"}',
                     got)

        return tok

    def skip_newlines(self) -> None:
        while self.accept('newline'):
            pass

    def is_at_end_of_statement(self) -> bool:
        tok = self.peek()
        return (tok.kind in ('newline', 'eof')
                or (tok.kind == 'punct' and tok.text == '}'))

    def end_of_statement(self) -> None:
        if not self.is_at_end_of_statement():
            self.die(f'unexpected {self.peek().text!r} at the end of statement')

        self.accept('newline')

    def source_text(self, line_no: int) -> str:
        line = self.lines[line_no - 1]
        comment_pos = line.find('#')
        if comment_pos >= 0:
            line = line[:comment_pos]

        return line.strip()

    def parse_int(self) -> int:
        return int(self.expect('integer').text)

    def parse_program(self) -> Program:
        program = Program()
        while True:
            self.skip_newlines()
            tok = self.peek()
            if tok.kind == 'eof':
                break

            if tok.kind == 'ident' and tok.text == 'type':
                self.parse_typedef(program)
                continue

            is_export = self.parse_linkage()
            tok = self.peek()
            if tok.kind == 'ident' and tok.text == 'data':
                self.parse_data(program)
            elif tok.kind == 'ident' and tok.text == 'function':
                self.parse_function(program, is_export)
            else:
                self.die(f'unexpected {tok.text!r}, expected a definition', tok)

        return program

    def parse_linkage(self) -> bool:
        is_export = False
        while True:
            if self.accept('ident', 'export'):
                is_export = True
            elif self.accept('ident', 'thread'):
                pass
            elif self.accept('ident', 'section'):
                self.expect('string')
                self.accept('string')
            else:
                return is_export

            self.skip_newlines()

    def parse_typedef(self, program: Program) -> None:
        self.expect('ident', 'type')
        name = self.expect('type').text[1:]
        self.expect('punct', '=')
        if self.accept('ident', 'align'):
            self.parse_int()

        self.skip_newlines()
        self.expect('punct', '{')
        depth = 1
        while depth:
            tok = self.next()
            if tok.kind == 'eof':
                self.die(f"unterminated definition of type ':{name}'", tok)

            if tok.kind == 'punct' and tok.text == '{':
                depth += 1
            elif tok.kind == 'punct' and tok.text == '}':
                depth -= 1

        program.types.append(name)

    def parse_data(self, program: Program) -> None:  # noqa
        start = self.expect('ident', 'data')
        name = self.expect('global').text[1:]
        if name in program.data:
            self.die(f"duplicate data definition '${name}'", start)

        self.expect('punct', '=')
        align = None
        if self.accept('ident', 'align'):
            align = self.parse_int()
            if align <= 0 or align & (align - 1):
                self.die('alignment must be a power of two')

        self.skip_newlines()
        self.expect('punct', '{')

        items: list[DataItem] = []
        while True:
            self.skip_newlines()
            if self.accept('punct', '}'):
                break

            tok = self.next()
            if tok.kind != 'ident' or tok.text not in DATA_ITEM_TYPES:
                if tok.kind == 'ident' and tok.text in ('s', 'd'):
                    self.die('floating point data is not supported', tok)

                self.die(f'expected data item type, got {tok.text!r}', tok)

            if tok.text == 'z':
                items.append(DataItem('z', (self.parse_int(),)))
            else:
                values: list[DataValue] = []
                while True:
                    vtok = self.peek()
                    if vtok.kind == 'integer':
                        values.append(int(self.next().text))
                    elif vtok.kind == 'string':
                        values.append(decode_string_literal(self.next().text,
                                                            vtok.line_no))
                    elif vtok.kind == 'global':
                        self.next()
                        offset = 0
                        if self.accept('punct', '+'):
                            offset = self.parse_int()

                        values.append(SymbolOffset(vtok.text[1:], offset))
                    else:
                        break

                if not values:
                    self.die('data item without values', tok)

                items.append(DataItem(tok.text, tuple(values)))

            self.skip_newlines()
            if not self.accept('punct', ','):
                self.skip_newlines()
                self.expect('punct', '}')
                break

        program.data[name] = DataDef(name, tuple(items), align=align,
                                     line_no=start.line_no)

    def parse_function(self, program: Program, is_export: bool) -> None:
        start = self.expect('ident', 'function')
        return_type = None
        tok = self.peek()
        if (tok.kind == 'ident' and tok.text in ABI_TYPES) or tok.kind == 'type':
            return_type = self.next().text

        name = self.expect('global').text[1:]
        if name in program.functions:
            self.die(f"duplicate function definition '${name}'", start)

        params = self.parse_params()
        self.skip_newlines()
        self.expect('punct', '{')
        blocks = self.parse_body(start)
        program.functions[name] = Function(
            name, params, blocks, return_type=return_type,
            is_export=is_export, line_no=start.line_no)

    def parse_params(self) -> tuple[Param, ...]:
        self.expect('punct', '(')
        params: list[Param] = []
        if self.accept('punct', ')'):
            return ()

        while True:
            tok = self.next()
            if tok.kind == 'punct' and tok.text == '...':
                params.append(Param('...', ''))
            elif (tok.kind == 'ident' and (tok.text in ABI_TYPES or tok.text == 'env')) \
                    or tok.kind == 'type':
                params.append(Param(tok.text, self.expect('temp').text[1:]))
            else:
                self.die(f'unexpected {tok.text!r} in parameter list', tok)

            if self.accept('punct', ')'):
                return tuple(params)

            self.expect('punct', ',')

    def parse_body(self, start: Token) -> tuple[Block, ...]:  # noqa
        blocks: list[Block] = []
        labels: set[str] = set()
        label: Optional[str] = None
        label_line_no = 0
        phis: list[Phi] = []
        instructions: list[Instruction] = []
        jump: Optional[Jump] = None

        while True:
            self.skip_newlines()
            tok = self.peek()
            if tok.kind == 'punct' and tok.text == '}':
                self.next()
                break

            if tok.kind == 'eof':
                self.die('unexpected end of input, function body is not closed', tok)

            if tok.kind == 'label':
                self.next()
                if label is not None:
                    blocks.append(Block(label, tuple(phis), tuple(instructions),
                                        jump, line_no=label_line_no))

                label = tok.text[1:]
                if label in labels:
                    self.die(f"duplicate block label '@{label}'", tok)

                labels.add(label)
                label_line_no = tok.line_no
                phis = []
                instructions = []
                jump = None
                self.end_of_statement()
                continue

            if label is None:
                self.die('function body must start with a block label', tok)

            if jump is not None:
                self.die('expected a block label after the jump instruction', tok)

            stmt = self.parse_statement()
            if isinstance(stmt, Phi):
                if instructions:
                    self.die('phi instructions must come first in the block', tok)

                phis.append(stmt)
            elif isinstance(stmt, (Jmp, Jnz, Ret, Hlt)):
                jump = stmt
            else:
                instructions.append(stmt)

        if label is None:
            self.die('function has no blocks', start)

        blocks.append(Block(label, tuple(phis), tuple(instructions), jump,
                            line_no=label_line_no))
        return tuple(blocks)

    def parse_operand(self) -> Operand:
        tok = self.next()
        if tok.kind == 'temp':
            return Temp(tok.text[1:])
        elif tok.kind == 'integer':
            return IntConst(int(tok.text))
        elif tok.kind == 'global':
            return GlobalRef(tok.text[1:])
        elif tok.kind == 'float':
            return FloatConst(tok.text)

        self.die(f'expected a value, got {tok.text!r}', tok)

    def parse_operands(self) -> tuple[Operand, ...]:
        if self.is_at_end_of_statement():
            return ()

        operands = [self.parse_operand()]
        while self.accept('punct', ','):
            operands.append(self.parse_operand())

        return tuple(operands)

    def parse_label(self) -> str:
        return self.expect('label').text[1:]

    def parse_call(self) -> tuple[Operand, tuple[tuple[str, Operand], ...]]:
        target = self.parse_operand()
        self.expect('punct', '(')
        args: list[tuple[str, Operand]] = []
        if self.accept('punct', ')'):
            return target, ()

        while True:
            tok = self.next()
            if tok.kind == 'punct' and tok.text == '...':
                args.append(('...', IntConst(0)))
            elif (tok.kind == 'ident' and (tok.text in ABI_TYPES or tok.text == 'env')) \
                    or tok.kind == 'type':
                args.append((tok.text, self.parse_operand()))
            else:
                self.die(f'unexpected {tok.text!r} in call arguments', tok)

            if self.accept('punct', ')'):
                return target, tuple(args)

            self.expect('punct', ',')

    def parse_statement(self) -> Instruction:  # noqa
        first = self.peek()
        meta: dict[str, Any] = {'line_no': first.line_no,
                                'text': self.source_text(first.line_no)}
        stmt: Instruction
        if first.kind == 'temp':
            self.next()
            dest = first.text[1:]
            self.expect('punct', '=')
            type_tok = self.next()
            if not ((type_tok.kind == 'ident' and type_tok.text in ASSIGN_TYPES)
                    or type_tok.kind == 'type'):
                self.die(f'expected result type after "=", got {type_tok.text!r}',
                         type_tok)

            op = self.expect('ident').text
            if op == 'phi':
                incoming: list[tuple[str, Operand]] = []
                while True:
                    pred = self.parse_label()
                    incoming.append((pred, self.parse_operand()))
                    if not self.accept('punct', ','):
                        break

                stmt = Phi(dest, type_tok.text, tuple(incoming), **meta)
            elif op == 'call':
                target, args = self.parse_call()
                stmt = Call(dest, type_tok.text, target, args, **meta)
            else:
                stmt = Assign(dest, type_tok.text, op, self.parse_operands(),
                              **meta)
        else:
            op_tok = self.expect('ident')
            op = op_tok.text
            if op == 'jmp':
                stmt = Jmp(self.parse_label(), **meta)
            elif op == 'jnz':
                test = self.parse_operand()
                self.expect('punct', ',')
                if_true = self.parse_label()
                self.expect('punct', ',')
                stmt = Jnz(test, if_true, self.parse_label(), **meta)
            elif op == 'ret':
                value = None
                if not self.is_at_end_of_statement():
                    value = self.parse_operand()

                stmt = Ret(value, **meta)
            elif op == 'hlt':
                stmt = Hlt(**meta)
            elif op == 'call':
                target, args = self.parse_call()
                stmt = Call(None, None, target, args, **meta)
            elif op.startswith('store'):
                operands = self.parse_operands()
                if len(operands) != 2:
                    self.die(f"'{op}' expects a value and an address", op_tok)

                stmt = Store(op, operands[0], operands[1], **meta)
            else:
                stmt = Volatile(op, self.parse_operands(), **meta)

        self.end_of_statement()
        return stmt


def parse_program(text: str) -> Program:
    return ILParser(text).parse_program()


@dataclass(frozen=True)
class MemoryByte:
    """One byte of memory: byte number `index` (little-endian) of `source`"""

    source: SymbolicValue
    index: int


def value_bytes(addr: int, value: SymbolicValue) -> dict[int, MemoryByte]:
    assert value.width % 8 == 0
    return {addr + i: MemoryByte(value, i) for i in range(value.width // 8)}


def byte_of(value: SymbolicValue, index: int) -> SymbolicValue:
    if index:
        value = sym_binop('bvlshr', value, make_concrete(index * 8, value.width))

    if value.width == BYTE_SIZE:
        return value

    return sym_unop('extract', value, BYTE_SIZE)


def load_value(memory: Mapping[int, MemoryByte], addr: int, size: int
               ) -> SymbolicValue:
    cells: list[MemoryByte] = []
    for i in range(size // 8):
        cell = memory.get(addr + i)
        if cell is None:
            raise PathFailure(PathErrorKind.MEMORY_ACCESS,
                              f'read of uninitialized memory at {addr + i:#x}')
        cells.append(cell)

    first = cells[0]
    if all(c.source == first.source and c.index == i
           for i, c in enumerate(cells)):
        if first.source.width == size:
            return first.source

        return sym_unop('extract', first.source, size)

    result: Optional[SymbolicValue] = None
    for i, cell in enumerate(cells):
        part = sym_extend(byte_of(cell.source, cell.index), size, False)
        if i:
            part = sym_binop('bvshl', part, make_concrete(i * 8, size))

        result = part if result is None else sym_binop('bvor', result, part)

    assert result is not None
    return result


class GlobalLayout:
    """Addresses of functions and data objects, and the initial memory
    contents. Function slots start at address 0, data follows them"""

    def __init__(self, program: Program) -> None:
        self.addresses: dict[str, int] = {}
        self.initial_memory: dict[int, MemoryByte] = {}

        addr = 0
        for name in program.functions:
            self.addresses[name] = addr
            self.initial_memory.update(
                value_bytes(addr, Concrete(FUNC_PATTERN, WORD_SIZE)))
            addr += FUNC_SLOT_SIZE

        for name, ddef in program.data.items():
            addr = align_up(addr, ddef.align or DEFAULT_DATA_ALIGN)
            self.addresses[name] = addr
            addr += ddef.size()

        for ddef in program.data.values():
            self._place_data(ddef)

    def _place_data(self, ddef: DataDef) -> None:
        addr = self.addresses[ddef.name]
        for item in ddef.items:
            if item.type == 'z':
                zero = Concrete(0, BYTE_SIZE)
                for i in range(item.size()):
                    self.initial_memory[addr + i] = MemoryByte(zero, 0)

                addr += item.size()
                continue

            width = EXT_TYPE_WIDTHS[item.type]
            for v in item.values:
                if isinstance(v, bytes):
                    for b in v:
                        self.initial_memory[addr] = MemoryByte(Concrete(b, BYTE_SIZE), 0)
                        addr += 1

                    continue

                if isinstance(v, SymbolOffset):
                    target = self.addresses.get(v.name)
                    if target is None:
                        parsing_error(ddef.line_no,
                                      f"unknown symbol '${v.name}' in data '${ddef.name}'")

                    bits = target + v.offset
                else:
                    bits = v

                self.initial_memory.update(
                    value_bytes(addr, make_concrete(bits, width)))
                addr += width // 8


@dataclass(frozen=True)
class BranchDecision:
    opcode: str
    label: str


EMPTY_MAPPING: Mapping[Any, Any] = types.MappingProxyType({})


@dataclass(frozen=True, eq=False)
class ExecutionState:
    """Snapshot of one execution path. States are never changed after
    they are created, the with_* methods return new states that share
    the unchanged parts with this one"""

    function: Function
    block: str
    index: int
    env: Mapping[str, SymbolicValue]
    memory: Mapping[int, MemoryByte] = field(default_factory=lambda: EMPTY_MAPPING)
    path_condition: tuple[Expression, ...] = ()
    next_alloc: int = STACK_BASE
    prev_block: Optional[str] = None
    decision: Optional[BranchDecision] = None
    halt_outcome: Optional['HaltReport'] = None

    @property
    def pc(self) -> tuple[str, int]:
        return (self.block, self.index)

    def _derive(self, **changes: Any) -> 'ExecutionState':
        changes.setdefault('decision', None)
        return replace(self, **changes)

    def with_assignment(self, name: str, value: SymbolicValue
                        ) -> 'ExecutionState':
        env = dict(self.env)
        env[name] = value
        return self._derive(env=types.MappingProxyType(env))

    def with_constraint(self, cond: Expression) -> 'ExecutionState':
        if cond.width != 1:
            raise ValueError('path condition entries must be boolean')

        return self._derive(path_condition=self.path_condition + (cond,))

    def with_pc(self, block: str, index: int = 0) -> 'ExecutionState':
        return self._derive(block=block, index=index, prev_block=self.block)

    def advanced(self) -> 'ExecutionState':
        return self._derive(index=self.index + 1)

    def with_memory(self, updates: Mapping[int, MemoryByte],
                    next_alloc: Optional[int] = None) -> 'ExecutionState':
        memory = dict(self.memory)
        memory.update(updates)
        return self._derive(
            memory=types.MappingProxyType(memory),
            next_alloc=self.next_alloc if next_alloc is None else next_alloc)

    def with_decision(self, decision: BranchDecision) -> 'ExecutionState':
        return replace(self, decision=decision)

    def with_halt_outcome(self, report: 'HaltReport') -> 'ExecutionState':
        return self._derive(halt_outcome=report)

    def __repr__(self) -> str:
        return (f'<ExecutionState ${self.function.name} @{self.block}:{self.index}, '
                f'{len(self.env)} vars, {len(self.path_condition)} constraints>')


@dataclass(frozen=True)
class HaltReport:
    function: Function
    env: Mapping[str, SymbolicValue]
    path_condition: tuple[Expression, ...]
    symbolic_vars: tuple[Var, ...]
    return_value: Optional[SymbolicValue] = None


@dataclass(frozen=True)
class Continue:
    state: ExecutionState


@dataclass(frozen=True)
class Fork:
    if_true: Optional[ExecutionState]
    if_false: Optional[ExecutionState]


@dataclass(frozen=True)
class Halt:
    report: HaltReport
    state: ExecutionState


@dataclass(frozen=True)
class PathError:
    kind: PathErrorKind
    state: ExecutionState
    message: str
    instruction: Optional[Instruction] = None


Outcome = Union[Continue, Fork, Halt, PathError]


class Feasibility(enum.Enum):
    SAT = 'sat'
    UNSAT = 'unsat'
    ERROR = 'error'


Z3_BINOPS: dict[str, Callable[[Any, Any], Any]] = {
    'bvadd': lambda a, b: a + b,
    'bvsub': lambda a, b: a - b,
    'bvmul': lambda a, b: a * b,
    'bvsdiv': lambda a, b: a / b,
    'bvudiv': z3.UDiv,
    'bvsrem': z3.SRem,
    'bvurem': z3.URem,
    'bvand': lambda a, b: a & b,
    'bvor': lambda a, b: a | b,
    'bvxor': lambda a, b: a ^ b,
    'bvshl': lambda a, b: a << b,
    'bvlshr': z3.LShR,
    'bvashr': lambda a, b: a >> b,
}

Z3_COMPARISONS: dict[str, Callable[[Any, Any], Any]] = {
    '=': lambda a, b: a == b,
    'distinct': lambda a, b: a != b,
    'bvslt': lambda a, b: a < b,
    'bvsle': lambda a, b: a <= b,
    'bvsgt': lambda a, b: a > b,
    'bvsge': lambda a, b: a >= b,
    'bvult': z3.ULT,
    'bvule': z3.ULE,
    'bvugt': z3.UGT,
    'bvuge': z3.UGE,
}


class SolverSession:
    """Owns one z3.Solver. Queries add their assertions inside `scope()`,
    so the solver holds no assertions between queries"""

    def __init__(self) -> None:
        self.solver = z3.Solver()
        self.num_checks = 0

    @contextmanager
    def scope(self) -> Generator['z3.Solver', None, None]:
        self.solver.push()
        try:
            yield self.solver
        finally:
            self.solver.pop()

    def check(self) -> 'z3.CheckSatResult':
        self.num_checks += 1
        return self.solver.check()


class SmtBridge:

    def __init__(self, session: SolverSession) -> None:
        self.session = session
        self.last_error = ''
        self._terms: 'weakref.WeakKeyDictionary[Expression, z3.ExprRef]' = \
            weakref.WeakKeyDictionary()

    def to_z3(self, e: Expression) -> 'z3.ExprRef':  # noqa
        t = self._terms.get(e)
        if t is not None:
            return t

        if isinstance(e, Var):
            t = z3.BitVec(e.name, e.width)
        elif isinstance(e, Const):
            t = z3.BitVecVal(e.bits, e.width)
        elif isinstance(e, BinOp):
            t = Z3_BINOPS[e.op](self.to_z3_bv(e.left), self.to_z3_bv(e.right))
        elif isinstance(e, UnOp):
            x = self.to_z3_bv(e.operand)
            if e.op == 'zero_extend':
                t = z3.ZeroExt(e.width - e.operand.width, x)
            elif e.op == 'sign_extend':
                t = z3.SignExt(e.width - e.operand.width, x)
            elif e.op == 'extract':
                t = z3.Extract(e.width - 1, 0, x)
            elif e.op == 'bvneg':
                t = -x
            elif e.op == 'bvnot':
                t = ~x
            else:
                raise AssertionError(f'unhandled unary operator {e.op}')
        elif isinstance(e, Cmp):
            t = Z3_COMPARISONS[e.op](self.to_z3_bv(e.left), self.to_z3_bv(e.right))
        else:
            raise AssertionError(f'unhandled expression {e!r}')

        self._terms[e] = t
        return t

    def to_z3_bv(self, e: Expression) -> 'z3.BitVecRef':
        t = self.to_z3(e)
        if isinstance(e, Cmp):
            return z3.If(t, z3.BitVecVal(1, 1), z3.BitVecVal(0, 1))

        return t

    def to_z3_bool(self, e: Expression) -> 'z3.BoolRef':
        if isinstance(e, Cmp):
            return self.to_z3(e)

        if e.width != 1:
            raise ValueError('expected a boolean expression')

        return self.to_z3(e) == z3.BitVecVal(1, 1)

    def check_feasible(self, path_condition: Iterable[Expression],
                       candidate: Expression) -> Feasibility:
        env = cur_env()
        with self.session.scope() as solver:
            try:
                for cond in path_condition:
                    solver.add(self.to_z3_bool(cond))

                solver.add(self.to_z3_bool(candidate))
                result = self.session.check()
            except z3.Z3Exception as e:
                self.last_error = str(e)
                env.solving_log_line(f'Solver failed: {e}')
                return Feasibility.ERROR

            if result == z3.sat:
                feasibility = Feasibility.SAT
            elif result == z3.unsat:
                feasibility = Feasibility.UNSAT
            else:
                self.last_error = solver.reason_unknown()
                feasibility = Feasibility.ERROR

        env.solving_log_line(
            f'Checking {candidate.sexpr()}: {feasibility.value}')
        return feasibility

    def model_for(self, path_condition: Iterable[Expression],
                  variables: Iterable[Var]) -> dict[str, int]:
        env = cur_env()
        values: dict[str, int] = {}
        with self.session.scope() as solver:
            try:
                for cond in path_condition:
                    solver.add(self.to_z3_bool(cond))

                result = self.session.check()
            except z3.Z3Exception as e:
                raise QSymSolvingError(f'solver failed while looking for a model: {e}')

            if result != z3.sat:
                if result == z3.unknown:
                    reason = solver.reason_unknown()
                else:
                    reason = 'path condition is unsatisfiable'

                raise QSymSolvingError(f'cannot find a model for the path: {reason}')

            m = solver.model()
            for var in variables:
                values[var.name] = m.eval(self.to_z3(var),
                                          model_completion=True).as_long()

        env.solving_log_line(f'Model: {values}')
        return values

    def render(self, value: SymbolicValue) -> str:
        if isinstance(value, Concrete):
            return str(value)

        assert isinstance(value, Symbolic)
        if not cur_env().simplify_symbolic_values:
            return str(value)

        term = z3.simplify(self.to_z3_bv(value.expr))
        return ' '.join(term.sexpr().split())


ARITHMETIC_OPS = {'add': 'bvadd', 'sub': 'bvsub', 'mul': 'bvmul',
                  'div': 'bvsdiv', 'udiv': 'bvudiv', 'rem': 'bvsrem',
                  'urem': 'bvurem', 'and': 'bvand', 'or': 'bvor',
                  'xor': 'bvxor'}
SHIFT_OPS = {'shl': 'bvshl', 'shr': 'bvlshr', 'sar': 'bvashr'}
COMPARISON_RE = re.compile('^c(eq|ne|sle|slt|sge|sgt|ule|ult|uge|ugt)([wl])$')
IL_COMPARISONS = {'eq': '=', 'ne': 'distinct',
                  'sle': 'bvsle', 'slt': 'bvslt', 'sge': 'bvsge', 'sgt': 'bvsgt',
                  'ule': 'bvule', 'ult': 'bvult', 'uge': 'bvuge', 'ugt': 'bvugt'}
EXTENSION_OPS = {'extsw': (WORD_SIZE, True), 'extuw': (WORD_SIZE, False),
                 'extsh': (HALF_SIZE, True), 'extuh': (HALF_SIZE, False),
                 'extsb': (BYTE_SIZE, True), 'extub': (BYTE_SIZE, False)}
LOAD_OPS = {'loadl': (LONG_SIZE, False),
            'loadw': (WORD_SIZE, True),
            'loadsw': (WORD_SIZE, True), 'loaduw': (WORD_SIZE, False),
            'loadsh': (HALF_SIZE, True), 'loaduh': (HALF_SIZE, False),
            'loadsb': (BYTE_SIZE, True), 'loadub': (BYTE_SIZE, False)}
STORE_OPS = {'storeb': BYTE_SIZE, 'storeh': HALF_SIZE,
             'storew': WORD_SIZE, 'storel': LONG_SIZE}
ALLOC_OPS = {'alloc4': 4, 'alloc8': 8, 'alloc16': 16}


def unsupported(msg: str) -> NoReturn:
    raise PathFailure(PathErrorKind.UNSUPPORTED_OPCODE, msg)


class Interpreter:
    """Executes one instruction at a time. Instructions of the entry
    function are the only ones ever executed, calls are not supported"""

    def __init__(self, program: Program, bridge: SmtBridge) -> None:
        self.program = program
        self.bridge = bridge
        self.layout = GlobalLayout(program)

    def initial_state(self, func: Function) -> ExecutionState:
        env: dict[str, SymbolicValue] = {}
        for param in func.params:
            env[param.name] = self.param_value(func, param)

        return ExecutionState(
            function=func, block=func.blocks[0].label, index=0,
            env=types.MappingProxyType(env),
            memory=types.MappingProxyType(dict(self.layout.initial_memory)))

    def param_value(self, func: Function, param: Param) -> SymbolicValue:
        name = qualified_name(func.name, param.name)
        if param.type in BASE_TYPE_WIDTHS:
            return Symbolic(mk_var(name, BASE_TYPE_WIDTHS[param.type]))

        if param.type in SUBWORD_TYPES:
            width, is_signed = SUBWORD_TYPES[param.type]
            return sym_extend(Symbolic(mk_var(name, width)), WORD_SIZE, is_signed)

        if param.type == '...':
            raise QSymUnsupportedError(
                f"variadic function '${func.name}' is not supported")

        raise QSymUnsupportedError(
            f"parameter '%{param.name}' of '${func.name}' has unsupported "
            f"type '{param.type}'")

    def step(self, state: ExecutionState) -> Outcome:
        block = state.function.get_block(state.block)
        assert block is not None

        instr: Optional[Instruction] = None
        try:
            if state.index < len(block.instructions):
                instr = block.instructions[state.index]
                return Continue(self.exec_instruction(state, instr))

            instr = block.jump
            if instr is None:
                return Continue(self.fall_through(state, block))

            return self.exec_jump(state, instr)
        except PathFailure as pf:
            return PathError(pf.kind, state, str(pf), instr)

    def read(self, state: ExecutionState, operand: Operand,
             width: Optional[int]) -> SymbolicValue:
        value: SymbolicValue
        if isinstance(operand, Temp):
            v = state.env.get(operand.name)
            if v is None:
                raise PathFailure(PathErrorKind.UNDEFINED_VARIABLE,
                                  f"'%{operand.name}' is not defined")
            value = v
        elif isinstance(operand, IntConst):
            return make_concrete(operand.value, width or LONG_SIZE)
        elif isinstance(operand, GlobalRef):
            addr = self.layout.addresses.get(operand.name)
            if addr is None:
                raise PathFailure(PathErrorKind.UNDEFINED_VARIABLE,
                                  f"'${operand.name}' is not defined")
            value = Concrete(addr, LONG_SIZE)
        elif isinstance(operand, FloatConst):
            unsupported(f'floating point value {operand.text} is not supported')
        else:
            raise AssertionError(f'unhandled operand {operand!r}')

        if width is None or value.width == width:
            return value

        # A long can be used where a word is expected, its upper bits
        # are ignored then
        if width == WORD_SIZE and value.width == LONG_SIZE:
            return sym_unop('extract', value, WORD_SIZE)

        width_mismatch(f'{operand} is {value.width} bits wide, '
                       f'but {width} bits are expected')

    def address(self, value: SymbolicValue) -> int:
        if value.width != LONG_SIZE:
            width_mismatch(f'address must be {LONG_SIZE} bits wide, '
                           f'got {value.width} bits')

        if not isinstance(value, Concrete):
            raise PathFailure(PathErrorKind.MEMORY_ACCESS,
                              'symbolic addresses are not supported')

        return value.bits

    def exec_instruction(self, state: ExecutionState, instr: Instruction
                         ) -> ExecutionState:
        if isinstance(instr, Assign):
            return self.exec_assign(state, instr)

        if isinstance(instr, Store):
            if instr.opcode not in STORE_OPS:
                unsupported(f"'{instr.opcode}' is not supported")

            size = STORE_OPS[instr.opcode]
            value = self.read(state, instr.value, None)
            if value.width < size:
                width_mismatch(f"'{instr.opcode}' needs a value of at least "
                               f"{size} bits, got {value.width} bits")

            if value.width > size:
                value = sym_unop('extract', value, size)

            addr = self.address(self.read(state, instr.address, None))
            return state.with_memory(value_bytes(addr, value)).advanced()

        if isinstance(instr, Call):
            unsupported('function calls are not supported')

        if isinstance(instr, Volatile):
            unsupported(f"'{instr.opcode}' is not supported")

        raise AssertionError(f'unhandled instruction {instr!r}')

    def exec_assign(self, state: ExecutionState, instr: Assign  # noqa
                    ) -> ExecutionState:
        op = instr.opcode
        width = BASE_TYPE_WIDTHS.get(instr.type)
        if width is None:
            unsupported(f"'{op}' with result type '{instr.type}' is not supported")

        def operand(i: int, width: Optional[int]) -> SymbolicValue:
            if i >= len(instr.args):
                unsupported(f"'{op}' with {len(instr.args)} operand(s) "
                            f"is not supported")

            return self.read(state, instr.args[i], width)

        value: SymbolicValue
        if op in ARITHMETIC_OPS:
            value = sym_binop(ARITHMETIC_OPS[op], operand(0, width), operand(1, width))
        elif op == 'neg':
            value = sym_unop('bvneg', operand(0, width))
        elif op == 'copy':
            value = operand(0, width)
        elif op in SHIFT_OPS:
            # the shift amount is a word, only its low bits are used
            amount = sym_extend(operand(1, WORD_SIZE), width, False)
            amount = sym_binop('bvand', amount, make_concrete(width - 1, width))
            value = sym_binop(SHIFT_OPS[op], operand(0, width), amount)
        elif m := COMPARISON_RE.match(op):
            arg_width = BASE_TYPE_WIDTHS[m.group(2)]
            cond = sym_cmp(IL_COMPARISONS[m.group(1)],
                           operand(0, arg_width), operand(1, arg_width))
            value = sym_extend(cond, width, False)
        elif op in EXTENSION_OPS:
            src_width, is_signed = EXTENSION_OPS[op]
            v = operand(0, None)
            if v.width < src_width:
                width_mismatch(f"'{op}' needs at least {src_width} bits, "
                               f"got {v.width} bits")

            if v.width > src_width:
                v = sym_unop('extract', v, src_width)

            value = sym_extend(v, width, is_signed)
        elif op in LOAD_OPS:
            size, is_signed = LOAD_OPS[op]
            addr = self.address(operand(0, None))
            value = sym_extend(load_value(state.memory, addr, size),
                               width, is_signed)
        elif op in ALLOC_OPS:
            if width != LONG_SIZE:
                width_mismatch(f"'{op}' must produce a long")

            size_v = operand(0, LONG_SIZE)
            if not isinstance(size_v, Concrete):
                raise PathFailure(PathErrorKind.MEMORY_ACCESS,
                                  'allocation of symbolic size is not supported')

            addr = align_up(state.next_alloc, ALLOC_OPS[op])
            return state.with_assignment(instr.dest, Concrete(addr, LONG_SIZE)) \
                .with_memory({}, next_alloc=addr + size_v.bits) \
                .advanced()
        else:
            unsupported(f"'{op}' is not supported")

        return state.with_assignment(instr.dest, value).advanced()

    def enter_block(self, state: ExecutionState, label: str) -> ExecutionState:
        block = state.function.get_block(label)
        if block is None:
            raise PathFailure(PathErrorKind.UNKNOWN_LABEL,
                              f"block '@{label}' is not defined "
                              f"in '${state.function.name}'")

        # all phis read their values before any of them is assigned
        values: list[tuple[str, SymbolicValue]] = []
        for phi in block.phis:
            width = BASE_TYPE_WIDTHS.get(phi.type)
            if width is None:
                unsupported(f"phi of type '{phi.type}' is not supported")

            for pred, value_operand in phi.incoming:
                if pred == state.block:
                    values.append((phi.dest, self.read(state, value_operand, width)))
                    break
            else:
                raise PathFailure(
                    PathErrorKind.UNDEFINED_VARIABLE,
                    f"phi for '%{phi.dest}' in '@{label}' has no value "
                    f"when coming from '@{state.block}'")

        new_state = state.with_pc(label, 0)
        for name, value in values:
            new_state = new_state.with_assignment(name, value)

        return new_state

    def fall_through(self, state: ExecutionState, block: Block) -> ExecutionState:
        next_block = state.function.next_block(block.label)
        if next_block is None:
            raise PathFailure(PathErrorKind.MISSING_JUMP,
                              f"last block '@{block.label}' does not end "
                              f"with a jump")

        return self.enter_block(state, next_block.label)

    def exec_jump(self, state: ExecutionState, jump: Jump) -> Outcome:
        if isinstance(jump, Jmp):
            return Continue(self.enter_block(state, jump.label))

        if isinstance(jump, Jnz):
            return self.exec_jnz(state, jump)

        if isinstance(jump, Ret):
            return_value = None
            if jump.value is not None:
                return_value = self.read(
                    state, jump.value,
                    BASE_TYPE_WIDTHS.get(state.function.return_type or ''))

            report = self.make_report(state, return_value)
            return Halt(report, state.with_halt_outcome(report))

        if isinstance(jump, Hlt):
            report = self.make_report(state, None)
            return Halt(report, state.with_halt_outcome(report))

        raise AssertionError(f'unhandled jump {jump!r}')

    def exec_jnz(self, state: ExecutionState, jnz: Jnz) -> Fork:
        test = self.read(state, jnz.test, WORD_SIZE)

        if isinstance(test, Concrete):
            label = jnz.if_true if test.bits else jnz.if_false
            succ = self.enter_block(state, label) \
                .with_decision(BranchDecision('jnz', label))
            if test.bits:
                return Fork(succ, None)

            return Fork(None, succ)

        zero = mk_const(0, WORD_SIZE)
        return Fork(
            self.successor(state, mk_cmp('distinct', test.as_expr(), zero),
                           jnz.if_true),
            self.successor(state, mk_cmp('=', test.as_expr(), zero),
                           jnz.if_false))

    def successor(self, state: ExecutionState, cond: Expression, label: str
                  ) -> Optional[ExecutionState]:
        feasibility = self.bridge.check_feasible(state.path_condition, cond)
        if feasibility == Feasibility.ERROR:
            raise QSymSolvingError(
                f"solver could not decide if the branch to '@{label}' "
                f"is feasible: {self.bridge.last_error}")

        if feasibility == Feasibility.UNSAT:
            return None

        return self.enter_block(state.with_constraint(cond), label) \
            .with_decision(BranchDecision('jnz', label))

    def make_report(self, state: ExecutionState,
                    return_value: Optional[SymbolicValue]) -> HaltReport:
        values = list(state.env.values())
        if return_value is not None:
            values.append(return_value)

        referenced = free_vars(itertools.chain(
            state.path_condition,
            (v.expr for v in values if isinstance(v, Symbolic))))

        func = state.function
        order = {qualified_name(func.name, p.name): i
                 for i, p in enumerate(func.params)}

        return HaltReport(
            function=func, env=state.env,
            path_condition=state.path_condition,
            symbolic_vars=tuple(sorted(
                referenced, key=lambda v: (order.get(v.name, len(order)), v.name))),
            return_value=return_value)


def report_branch_decision(decision: BranchDecision) -> None:
    cur_env().write_line(
        f"[{decision.opcode}] Exploring path for label '{decision.label}'")


def report_halt(report: HaltReport, bridge: SmtBridge) -> None:
    env = cur_env()

    env.write_line('Halting executing')
    env.write_line('Local variables:')
    for name, value in report.env.items():
        env.write_line(f'\t{name} = {bridge.render(value)}')

    env.write_line('')
    env.write_line('Symbolic variable values:')
    if env.produce_model_values and report.symbolic_vars:
        model = bridge.model_for(report.path_condition, report.symbolic_vars)
        for var in report.symbolic_vars:
            env.write_line(f'\t{var.name} -> {format_bits(model[var.name], var.width)}')

    env.ensure_empty_line()


def report_path_error(error: PathError) -> None:
    env = cur_env()

    env.write_line(f'Path abandoned: {error.kind.value}: {error.message}')
    location = f'in ${error.state.function.name}, block @{error.state.block}'
    if error.instruction is not None:
        location += f', line {error.instruction.line_no}: {error.instruction.text}'

    env.write_line(f'\t{location}')
    env.ensure_empty_line()


@dataclass
class ExplorationSummary:
    num_states: int = 0
    num_forks: int = 0
    num_halted: int = 0
    num_failed: int = 0


def symex_function(program: Program, function_name: str, *,  # noqa
                   session: Optional[SolverSession] = None
                   ) -> ExplorationSummary:
    """Explore all feasible paths of the function, depth first, reporting
    each path as soon as it halts or fails.

    On a fork, the false successor is pushed to the worklist before the
    true one, so the true branch is explored first"""

    env = cur_env()

    if function_name.startswith('$'):
        function_name = function_name[1:]

    func = program.functions.get(function_name)
    if func is None:
        raise QSymUnknownFunctionError(
            f"function '${function_name}' is not defined")

    bridge = SmtBridge(session or SolverSession())
    interp = Interpreter(program, bridge)
    summary = ExplorationSummary()

    pending: list[ExecutionState] = [interp.initial_state(func)]
    while pending:
        state = pending.pop()
        summary.num_states += 1

        if state.decision is not None:
            report_branch_decision(state.decision)

        env.progress_log_line(
            f'Exploring from @{state.block}:{state.index}, '
            f'{len(pending)} state(s) pending')

        outcome = interp.step(state)
        while isinstance(outcome, Continue):
            outcome = interp.step(outcome.state)

        if isinstance(outcome, Fork):
            summary.num_forks += 1
            if outcome.if_false is not None:
                pending.append(outcome.if_false)

            if outcome.if_true is not None:
                pending.append(outcome.if_true)

            if outcome.if_true is None and outcome.if_false is None:
                env.progress_log_line(
                    f'No feasible branches at @{state.block}')
        elif isinstance(outcome, Halt):
            summary.num_halted += 1
            report_halt(outcome.report, bridge)
            env.progress_log_line(f'Path halted at @{outcome.state.block}')
        elif isinstance(outcome, PathError):
            summary.num_failed += 1
            if env.report_path_errors:
                report_path_error(outcome)

            env.progress_log_line(
                f'Path abandoned at @{outcome.state.block}: {outcome.message}')
        else:
            raise AssertionError(f'unhandled outcome {outcome!r}')

    env.progress_log_line(
        f'Done: {summary.num_halted} path(s) halted, '
        f'{summary.num_failed} abandoned, {summary.num_forks} fork(s), '
        f'{bridge.session.num_checks} solver check(s)')

    return summary


def parse_input_file(env: SymEnvironment) -> Program:
    try:
        if env.input_file == '-':
            text = sys.stdin.read()
        else:
            with open(env.input_file) as f:
                text = f.read()
    except OSError as e:
        raise QSymInputError(
            f"cannot read '{env.input_file}': {e.strerror or e}")
    except UnicodeDecodeError as e:
        raise QSymInputError(f"cannot read '{env.input_file}': {e}")

    return parse_program(text)


def main() -> None:
    env = cur_env()
    program = parse_input_file(env)
    symex_function(program, env.entry_function)


def usage() -> None:
    progname = os.path.basename(sys.argv[0])
    print()
    print("qsym: symbolic executor for QBE intermediate language")
    print()
    print(
        "Executes a function of a QBE IL program with its parameters treated\n"
        "as unconstrained symbolic values, explores every feasible path through\n"
        "the function, and reports the local variables of each path that halts,\n"
        "with the values of the parameters that make the function take that path.\n"
        "Feasibility of the paths is decided by Z3 theorem prover\n"
        "(https://github.com/Z3Prover/z3), \"z3-solver\" python package is needed.")
    print()
    print("Free for non-commercial use. Licensed under Prosperity Public License 3.0.0.\n"
          f"Please run \"{progname} --license\" to display the license.")
    print()
    print(f"Usage: {progname} [options] [settings] [FILE [FUNC]]")
    print()
    print("FILE and FUNC are shortcuts for `--input-file` and `--entry-function`")
    print()
    print("Available options:")
    print()
    print("  --help")
    print()
    print("        Show help on usage")
    print()
    print("  --license")
    print()
    print("        Show the software license this program is released under")
    print()
    print("  --version")
    print()
    print("        Show version")
    print()
    print("Available settings:")
    print()
    print("  Default value for each setting is shown after the '=' sign")
    print()

    dfl_env = SymEnvironment()
    for key, value in SymEnvironment.__dict__.items():
        if SymEnvironment.is_option(key):
            name = key.replace('_', '-')
            text = re.sub('`(\\w+)`',
                          lambda m: '`--' + m.group(1).replace('_', '-') + '`',
                          value.__doc__)
            text = re.sub('^\\ *', '        ', text, flags=re.M)

            dfl_v = getattr(dfl_env, key)
            if isinstance(dfl_v, bool):
                dfl_str = 'true' if dfl_v else 'false'
            else:
                dfl_str = f"'{dfl_v}'"

            print(f'  --{name}={dfl_str}\n\n{text}')


def show_license() -> None:
    print(sys.modules['qsym'].__doc__)


def parse_cmdline_args(args: Iterable[str]) -> None:  # noqa
    env = cur_env()

    positional: list[str] = []

    for arg in args:
        if not arg.startswith('--'):
            positional.append(arg)
            continue

        if arg == '--help':
            usage()
            sys.exit()

        if arg == '--license':
            show_license()
            sys.exit()

        if arg == '--version':
            print(VERSION)
            sys.exit()

        if '=' in arg:
            argname, value_str = arg[2:].split('=', 1)
        else:
            argname = arg[2:]
            value_str = ''

        name = argname.replace('-', '_')
        if not name.isidentifier():
            sys.stderr.write("Incorrect setting name\n")
            sys.exit(-1)

        if not SymEnvironment.is_option(name):
            sys.stderr.write(f"Unrecognized setting \"--{argname}\"\n")
            sys.exit(-1)

        if not value_str:
            sys.stderr.write(f"Value for \"--{argname}\" must be specified\n")
            sys.exit(-1)

        cur_v = getattr(env, name)
        if isinstance(cur_v, bool):
            if value_str == 'true':
                setattr(env, name, True)
            elif value_str == 'false':
                setattr(env, name, False)
            else:
                sys.stderr.write(
                    f"Setting \"--{argname}\" can be only 'true' or 'false'\n")
                sys.exit(-1)
        elif isinstance(cur_v, str):
            try:
                setattr(env, name, value_str)
            except ValueError as e:
                sys.stderr.write(f"Incorrect value for --{argname}: {e}\n")
                sys.exit(-1)
        else:
            raise AssertionError('unhandled type of option value')

    if len(positional) > 2:
        sys.stderr.write("At most two arguments are expected: "
                         "input file and entry function\n")
        sys.exit(-1)

    try:
        if len(positional) > 0:
            env.input_file = positional[0]

        if len(positional) > 1:
            env.entry_function = positional[1]
    except ValueError as e:
        sys.stderr.write(f"Incorrect argument: {e}\n")
        sys.exit(-1)


def main_cli() -> None:
    try:
        with CurrentEnvironment(SymEnvironment()):
            parse_cmdline_args(sys.argv[1:])
            main()
    except QSymError as e:
        sys.stderr.write(f'{e}\n')
        sys.exit(-1)


VERSION = "0.1.0.dev0"

if __name__ == '__main__':
    main_cli()

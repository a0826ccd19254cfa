#!/usr/bin/env python3

import pytest

import z3

import qsym

from test_util import FreshEnv, CaptureStdout, CaptureStderr


def make_bridge() -> qsym.SmtBridge:
    return qsym.SmtBridge(qsym.SolverSession())


def test_feasibility() -> None:
    a = qsym.mk_var('f:a', 32)
    zero = qsym.mk_const(0, 32)
    ten = qsym.mk_const(10, 32)

    with FreshEnv():
        bridge = make_bridge()
        pc = (qsym.mk_cmp('bvult', a, ten),)

        assert bridge.check_feasible(
            pc, qsym.mk_cmp('=', a, zero)) == qsym.Feasibility.SAT
        assert bridge.check_feasible(
            pc, qsym.mk_cmp('bvugt', a, ten)) == qsym.Feasibility.UNSAT
        assert bridge.check_feasible(
            (), qsym.mk_cmp('distinct', a, a)) == qsym.Feasibility.UNSAT

        # nothing stays asserted between queries
        assert len(bridge.session.solver.assertions()) == 0
        assert bridge.session.num_checks == 3


def test_scope_pops_on_error() -> None:
    session = qsym.SolverSession()
    with pytest.raises(RuntimeError):
        with session.scope() as solver:
            solver.add(z3.BitVec('x', 8) == 1)
            raise RuntimeError('boom')

    assert len(session.solver.assertions()) == 0
    assert session.solver.num_scopes() == 0


def test_models() -> None:
    a = qsym.mk_var('f:a', 32)
    b = qsym.mk_var('f:b', 64)
    c = qsym.mk_var('f:c', 8)

    sum_ab = qsym.mk_binop('bvadd', qsym.mk_unop('zero_extend', a, 64), b)
    pc = (qsym.mk_cmp('=', sum_ab, qsym.mk_const(100, 64)),
          qsym.mk_cmp('=', a, qsym.mk_const(40, 32)))

    with FreshEnv():
        bridge = make_bridge()
        model = bridge.model_for(pc, [a, b, c])

    assert model == {'f:a': 40, 'f:b': 60, 'f:c': 0}


def test_model_of_unsat_path() -> None:
    a = qsym.mk_var('f:a', 32)
    pc = (qsym.mk_cmp('=', a, qsym.mk_const(1, 32)),
          qsym.mk_cmp('=', a, qsym.mk_const(2, 32)))

    with FreshEnv():
        with pytest.raises(qsym.QSymSolvingError):
            make_bridge().model_for(pc, [a])


def test_translation() -> None:
    a = qsym.mk_var('f:a', 32)
    e = qsym.mk_binop(
        'bvsdiv',
        qsym.mk_unop('sign_extend', qsym.mk_unop('extract', a, 16), 32),
        qsym.mk_const(-2, 32))
    flag = qsym.mk_unop('zero_extend', qsym.mk_cmp('bvslt', e, a), 32)

    with FreshEnv():
        bridge = make_bridge()
        t = bridge.to_z3(e)
        assert bridge.to_z3(e) is t

        for v, expected in ((0xfffe, 1), (0x7ff0, 0xffffc008), (5, 0xfffffffe)):
            r = z3.simplify(z3.substitute(t, (z3.BitVec('f:a', 32),
                                              z3.BitVecVal(v, 32))))
            assert r.as_long() == expected

        r = z3.simplify(z3.substitute(bridge.to_z3(flag),
                                      (z3.BitVec('f:a', 32), z3.BitVecVal(4, 32))))
        assert r.as_long() == 1

    # signed division and remainder agree with concrete evaluation
    for op in ('bvsdiv', 'bvsrem', 'bvudiv', 'bvurem', 'bvashr', 'bvlshr'):
        for x, y in ((7, 2), (0xfffffff9, 2), (7, 0xfffffffe), (0x80000000, 3)):
            with FreshEnv():
                expr = qsym.mk_binop(op, qsym.mk_const(x, 32), qsym.mk_const(y, 32))
                r = z3.simplify(make_bridge().to_z3(expr))

            assert r.as_long() == qsym.eval_binop(op, x, y, 32), (op, x, y)


def test_render() -> None:
    a = qsym.Symbolic(qsym.mk_var('main:a', 32))
    e = qsym.sym_binop('bvadd', qsym.make_concrete(0, 32), a)

    with FreshEnv():
        bridge = make_bridge()
        assert bridge.render(qsym.make_concrete(7, 64)) == '#x0000000000000007'
        assert bridge.render(a) == '|main:a|'
        assert bridge.render(e) == '|main:a|'

    with FreshEnv(simplify_symbolic_values=False):
        assert make_bridge().render(e) == '(bvadd #x00000000 |main:a|)'


def test_solving_log() -> None:
    a = qsym.mk_var('f:a', 32)
    with FreshEnv(log_solving_attempts=True), CaptureStderr() as err:
        make_bridge().check_feasible((), qsym.mk_cmp('=', a, a))

    assert err.getvalue() == 'Checking (= |f:a| |f:a|): sat\n'


class FailingSession(qsym.SolverSession):
    def check(self) -> 'z3.CheckSatResult':
        self.num_checks += 1
        raise z3.Z3Exception('solver gave up')


FORK = """
function w $main(w %a) {
@start
    jnz %a, @one, @zero
@one
    ret 1
@zero
    ret 0
}
"""


def test_solver_failure_is_fatal() -> None:
    a = qsym.mk_var('f:a', 32)
    with FreshEnv(log_solving_attempts=True), CaptureStderr() as err:
        bridge = qsym.SmtBridge(FailingSession())
        assert bridge.check_feasible(
            (), qsym.mk_cmp('=', a, a)) == qsym.Feasibility.ERROR
        assert bridge.last_error == 'solver gave up'
        assert len(bridge.session.solver.assertions()) == 0

    assert err.getvalue() == 'Solver failed: solver gave up\n'

    session = FailingSession()
    with FreshEnv(), CaptureStdout() as out:
        with pytest.raises(qsym.QSymSolvingError) as exc:
            qsym.symex_function(qsym.parse_program(FORK), 'main',
                                session=session)

    assert "solver could not decide if the branch to '@one'" in str(exc.value)
    assert str(exc.value).endswith('solver gave up')
    assert session.num_checks == 1
    assert out.getvalue() == ''


if __name__ == '__main__':
    test_feasibility()
    test_scope_pops_on_error()
    test_models()
    test_model_of_unsat_path()
    test_translation()
    test_render()
    test_solving_log()
    test_solver_failure_is_fatal()

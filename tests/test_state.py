#!/usr/bin/env python3

import types
import dataclasses

import pytest

import qsym

FUNC = qsym.parse_program("""
function $f(w %a) {
@start
    %b =w add %a, 1
@next
    hlt
}
""").functions['f']


def make_state() -> qsym.ExecutionState:
    a = qsym.Symbolic(qsym.mk_var('f:a', 32))
    return qsym.ExecutionState(function=FUNC, block='start', index=0,
                               env=types.MappingProxyType({'a': a}))


def test_immutability() -> None:
    s = make_state()

    with pytest.raises(dataclasses.FrozenInstanceError):
        s.index = 1  # type: ignore

    with pytest.raises(TypeError):
        s.env['b'] = qsym.make_concrete(1, 32)  # type: ignore

    s2 = s.with_assignment('b', qsym.make_concrete(1, 32))
    assert 'b' not in s.env
    assert s2.env['b'] == qsym.Concrete(1, 32)
    assert s2.env['a'] is s.env['a']
    assert s2.function is s.function


def test_rebinding_keeps_order() -> None:
    s = make_state() \
        .with_assignment('x', qsym.make_concrete(1, 32)) \
        .with_assignment('a', qsym.make_concrete(2, 32))

    assert list(s.env) == ['a', 'x']
    assert s.env['a'] == qsym.Concrete(2, 32)


def test_constraints_and_pc() -> None:
    s = make_state()
    cond = qsym.mk_cmp('distinct', qsym.mk_var('f:a', 32), qsym.mk_const(0, 32))

    s2 = s.with_constraint(cond)
    assert s.path_condition == ()
    assert s2.path_condition == (cond,)

    with pytest.raises(ValueError):
        s.with_constraint(qsym.mk_var('f:a', 32))

    s3 = s2.advanced()
    assert s3.pc == ('start', 1)

    s4 = s3.with_pc('next')
    assert s4.pc == ('next', 0)
    assert s4.prev_block == 'start'
    assert s4.path_condition is s2.path_condition


def test_decision_not_inherited() -> None:
    s = make_state().with_decision(qsym.BranchDecision('jnz', 'next'))
    assert s.decision == qsym.BranchDecision('jnz', 'next')
    assert s.advanced().decision is None
    assert s.with_assignment('y', qsym.make_concrete(0, 64)).decision is None


def test_memory() -> None:
    s = make_state()
    x = qsym.Symbolic(qsym.mk_var('f:a', 32))

    s2 = s.with_memory(qsym.value_bytes(0x100, x), next_alloc=0x200)
    assert s.memory == {}
    assert s2.next_alloc == 0x200
    assert sorted(s2.memory) == [0x100, 0x101, 0x102, 0x103]

    # whole and partial loads of a single stored value
    assert qsym.load_value(s2.memory, 0x100, 32) == x
    low = qsym.load_value(s2.memory, 0x100, 8)
    assert isinstance(low, qsym.Symbolic)
    assert low.width == 8

    # load crossing two values is assembled from bytes
    s3 = s2.with_memory(qsym.value_bytes(0x104, qsym.make_concrete(0, 32)))
    mixed = qsym.load_value(s3.memory, 0x102, 32)
    assert isinstance(mixed, qsym.Symbolic)
    assert mixed.width == 32

    with pytest.raises(qsym.PathFailure) as exc:
        qsym.load_value(s2.memory, 0x102, 64)

    assert exc.value.kind == qsym.PathErrorKind.MEMORY_ACCESS


def test_concrete_bytes_assemble() -> None:
    mem = {}
    mem.update(qsym.value_bytes(0, qsym.make_concrete(0x11223344, 32)))
    mem.update(qsym.value_bytes(4, qsym.make_concrete(0x55667788, 32)))

    assert qsym.load_value(mem, 2, 32) == qsym.Concrete(0x77881122, 32)
    assert qsym.load_value(mem, 0, 64) == qsym.Concrete(0x5566778811223344, 64)


if __name__ == '__main__':
    test_immutability()
    test_rebinding_keeps_order()
    test_constraints_and_pc()
    test_decision_not_inherited()
    test_memory()
    test_concrete_bytes_assemble()

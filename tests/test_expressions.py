#!/usr/bin/env python3

import gc

import pytest

import qsym


def test_interning() -> None:
    a = qsym.mk_var('f:a', 32)
    b = qsym.mk_var('f:a', 32)
    assert a is b

    one = qsym.mk_const(1, 32)
    e1 = qsym.mk_binop('bvadd', a, one)
    e2 = qsym.mk_binop('bvadd', b, qsym.mk_const(1, 32))
    assert e1 is e2
    assert hash(e1) == hash(e2)

    assert qsym.mk_var('f:a', 64) is not a
    assert qsym.mk_var('f:a', 64) != a
    assert qsym.mk_binop('bvsub', a, one) != e1


def test_interning_releases_dropped_terms() -> None:
    gc.collect()
    size_before = len(qsym.g_expression_table)

    kept = qsym.mk_binop('bvadd', qsym.mk_var('gc:kept', 32),
                         qsym.mk_const(0x7777, 32))
    for i in range(200):
        qsym.mk_binop('bvmul', qsym.mk_var(f'gc:v{i}', 32),
                      qsym.mk_const(0x10000 + i, 32))

    gc.collect()
    # only the kept term and its two children stay interned
    assert len(qsym.g_expression_table) - size_before == 3

    assert qsym.mk_var('gc:kept', 32) is kept.left
    del kept

    gc.collect()
    assert len(qsym.g_expression_table) == size_before


def test_constants_wrap() -> None:
    assert qsym.mk_const(-1, 8).bits == 0xff
    assert qsym.mk_const(0x1_0000_0001, 32).bits == 1
    assert qsym.make_concrete(-2, 32) == qsym.Concrete(0xfffffffe, 32)

    with pytest.raises(ValueError):
        qsym.Concrete(256, 8)


def test_sexpr() -> None:
    a = qsym.mk_var('main:a', 32)
    e = qsym.mk_binop('bvadd', qsym.mk_const(0, 32), a)
    assert e.sexpr() == '(bvadd #x00000000 |main:a|)'

    ext = qsym.mk_unop('zero_extend', a, 64)
    assert ext.sexpr() == '((_ zero_extend 32) |main:a|)'

    ext = qsym.mk_unop('extract', qsym.mk_var('main:b', 64), 32)
    assert ext.sexpr() == '((_ extract 31 0) |main:b|)'

    c = qsym.mk_cmp('bvult', a, qsym.mk_const(3, 32))
    assert c.width == 1
    assert qsym.mk_unop('zero_extend', c, 32).sexpr() == \
        '((_ zero_extend 31) (ite (bvult |main:a| #x00000003) #b1 #b0))'


def test_width_checks() -> None:
    a = qsym.mk_var('f:a', 32)
    b = qsym.mk_var('f:b', 64)

    with pytest.raises(qsym.PathFailure) as exc:
        qsym.mk_binop('bvadd', a, b)

    assert exc.value.kind == qsym.PathErrorKind.WIDTH_MISMATCH

    with pytest.raises(qsym.PathFailure):
        qsym.mk_cmp('=', a, b)

    with pytest.raises(qsym.PathFailure):
        qsym.mk_unop('zero_extend', b, 32)

    with pytest.raises(qsym.PathFailure):
        qsym.mk_unop('extract', a, 64)


def test_wraparound() -> None:
    w = qsym.WORD_SIZE
    l = qsym.LONG_SIZE  # noqa

    assert qsym.eval_binop('bvadd', 0xffffffff, 1, w) == 0
    assert qsym.eval_binop('bvsub', 0, 1, w) == 0xffffffff
    assert qsym.eval_binop('bvmul', 0x80000000, 2, w) == 0
    assert qsym.eval_binop('bvmul', 0x10000, 0x10000, w) == 0
    assert qsym.eval_binop('bvmul', 0x10000, 0x10000, l) == 0x100000000
    assert qsym.eval_binop('bvadd', 2**64 - 1, 2, l) == 1
    assert qsym.eval_binop('bvsub', 0, 2, l) == 2**64 - 2


def test_division() -> None:
    w = qsym.WORD_SIZE
    m7 = qsym.bitmask(w) - 6  # -7

    assert qsym.eval_binop('bvsdiv', m7, 2, w) == qsym.bitmask(w) - 2  # -3
    assert qsym.eval_binop('bvsrem', m7, 2, w) == qsym.bitmask(w)  # -1
    assert qsym.eval_binop('bvsrem', 7, qsym.bitmask(w) - 1, w) == 1
    assert qsym.eval_binop('bvudiv', m7, 2, w) == m7 // 2
    assert qsym.eval_binop('bvurem', 7, 4, w) == 3

    for op in ('bvsdiv', 'bvudiv', 'bvsrem', 'bvurem'):
        with pytest.raises(qsym.PathFailure) as exc:
            qsym.eval_binop(op, 1, 0, w)

        assert exc.value.kind == qsym.PathErrorKind.DIVISION_BY_ZERO


def test_shifts_and_comparisons() -> None:
    w = qsym.WORD_SIZE

    assert qsym.eval_binop('bvshl', 1, 31, w) == 0x80000000
    assert qsym.eval_binop('bvshl', 1, 32, w) == 0
    assert qsym.eval_binop('bvlshr', 0x80000000, 31, w) == 1
    assert qsym.eval_binop('bvashr', 0x80000000, 31, w) == 0xffffffff
    assert qsym.eval_binop('bvashr', 0x80000000, 40, w) == 0xffffffff

    assert qsym.eval_cmp('bvslt', 0xffffffff, 0, w)
    assert not qsym.eval_cmp('bvult', 0xffffffff, 0, w)
    assert qsym.eval_cmp('bvsge', 0, 0xffffffff, w)
    assert qsym.eval_cmp('bvsge', 5, 5, w)
    assert qsym.eval_cmp('distinct', 1, 2, w)


def test_symbolic_values() -> None:
    a = qsym.Symbolic(qsym.mk_var('f:a', 32))
    one = qsym.make_concrete(1, 32)
    two = qsym.make_concrete(2, 32)

    assert qsym.sym_binop('bvadd', one, two) == qsym.Concrete(3, 32)

    s = qsym.sym_binop('bvadd', a, one)
    assert isinstance(s, qsym.Symbolic)
    assert s.width == 32

    c = qsym.sym_cmp('bvult', one, two)
    assert c == qsym.Concrete(1, 1)
    assert qsym.sym_extend(c, 32, False) == qsym.Concrete(1, 32)

    neg = qsym.sym_extend(qsym.make_concrete(-1, 8), 32, True)
    assert neg == qsym.Concrete(0xffffffff, 32)

    low = qsym.sym_unop('extract', qsym.Concrete(0x1_2345_6789, 64), 32)
    assert low == qsym.Concrete(0x23456789, 32)


def test_free_vars() -> None:
    a = qsym.mk_var('f:a', 32)
    b = qsym.mk_var('f:b', 32)
    e = qsym.mk_binop('bvmul', qsym.mk_binop('bvadd', a, b), a)
    c = qsym.mk_cmp('=', e, qsym.mk_const(0, 32))

    assert qsym.free_vars([c]) == {a, b}
    assert qsym.free_vars([qsym.mk_const(1, 8)]) == set()


if __name__ == '__main__':
    test_interning()
    test_interning_releases_dropped_terms()
    test_constants_wrap()
    test_sexpr()
    test_width_checks()
    test_wraparound()
    test_division()
    test_shifts_and_comparisons()
    test_symbolic_values()
    test_free_vars()

import math

import pytest

from scorefill.autograd import Op, collect_variables, constant, restore, snapshot, variable


def test_values_are_computed_eagerly():
    x = variable(3.0)
    y = variable(4.0)
    f = (x + y) * y
    assert f.value == 28.0
    assert f.op is Op.MULTIPLY


def test_gradient_of_sum_times_shared_factor():
    x = variable(3.0)
    y = variable(4.0)
    f = x.add(y).multiply(y)
    f.compute_gradients()
    assert x.gradient == pytest.approx(4.0)
    assert y.gradient == pytest.approx(11.0)
    assert f.gradient == 1.0


def test_gradient_of_division():
    a = variable(10.0)
    b = variable(2.0)
    f = a.divide(b)
    assert f.value == pytest.approx(5.0)
    f.compute_gradients()
    assert a.gradient == pytest.approx(0.5)
    assert b.gradient == pytest.approx(-2.5)


def test_subtract_negate_and_power():
    x = variable(3.0)
    f = (x - 1.0) ** 2
    f.compute_gradients()
    assert f.value == pytest.approx(4.0)
    assert x.gradient == pytest.approx(4.0)
    g = -x
    g.compute_gradients()
    assert g.value == -3.0
    assert x.gradient == -1.0


def test_reflected_operators_lift_numbers():
    x = variable(2.0)
    f = 1.0 - 3.0 * x + 8.0 / x
    f.compute_gradients()
    assert f.value == pytest.approx(1.0 - 6.0 + 4.0)
    assert x.gradient == pytest.approx(-3.0 - 8.0 / 4.0)


def test_shared_subexpression_accumulates():
    x = variable(3.0)
    s = x * x  # reused below
    f = s + s
    f.compute_gradients()
    assert f.value == 18.0
    assert x.gradient == pytest.approx(12.0)


def test_repeated_backward_passes_do_not_leak_gradients():
    x = variable(2.0)
    f = x * x
    f.compute_gradients()
    f.compute_gradients()
    assert x.gradient == pytest.approx(4.0)


def test_zero_grad_clears_subgraph():
    x = variable(2.0)
    f = x * 5.0
    f.compute_gradients()
    assert x.gradient == 5.0
    f.zero_grad()
    assert x.gradient == 0.0
    assert f.gradient == 0.0


def test_exponent_gradient():
    base = constant(2.0)
    e = variable(3.0)
    f = base.power(e)
    f.compute_gradients()
    assert f.value == 8.0
    assert e.gradient == pytest.approx(8.0 * math.log(2.0))


def test_long_chain_has_no_recursion_limit():
    xs = [variable(float(i)) for i in range(5000)]
    total = constant(0.0)
    for x in xs:
        total = total + x
    total.compute_gradients()
    assert total.value == pytest.approx(sum(range(5000)))
    assert all(x.gradient == 1.0 for x in xs)


def test_constants_cannot_be_assigned():
    c = constant(1.0)
    with pytest.raises(ValueError):
        c.value = 2.0


def test_snapshot_and_restore_variables():
    x = variable(1.0)
    y = variable(2.0)
    f = x * y + 1.0
    leaves = collect_variables(f)
    assert set(map(id, leaves)) == {id(x), id(y)}
    saved = snapshot(leaves)
    x.value = 10.0
    y.value = 20.0
    restore(leaves, saved)
    assert (x.value, y.value) == (1.0, 2.0)

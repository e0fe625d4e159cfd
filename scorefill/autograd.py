from __future__ import annotations

import math
from enum import Enum
from typing import Dict, List, Sequence, Union


class Op(Enum):
    VARIABLE = "variable"
    CONSTANT = "constant"
    ADD = "add"
    MULTIPLY = "multiply"
    POWER = "power"


Operand = Union["Node", float, int]


class Node:
    __slots__ = ("_value", "gradient", "op", "operands")

    def __init__(self, value: float, op: Op = Op.VARIABLE, operands: Sequence["Node"] = ()) -> None:
        self._value = float(value)
        self.gradient = 0.0
        self.op = op
        self.operands: tuple = tuple(operands)

    @property
    def value(self) -> float:
        return self._value

    @value.setter
    def value(self, new_value: float) -> None:
        if self.op is not Op.VARIABLE:
            raise ValueError(f"Only variables can be assigned, not {self.op.value} nodes")
        self._value = float(new_value)

    @property
    def is_variable(self) -> bool:
        return self.op is Op.VARIABLE

    @property
    def is_leaf(self) -> bool:
        return self.op in (Op.VARIABLE, Op.CONSTANT)

    def __repr__(self) -> str:
        return f"Node({self.op.value}, value={self._value:.6g}, gradient={self.gradient:.6g})"

    # Forward ops: values are computed eagerly at construction.

    def add(self, other: Operand) -> "Node":
        other = _lift(other)
        return Node(self._value + other._value, Op.ADD, (self, other))

    def multiply(self, other: Operand) -> "Node":
        other = _lift(other)
        return Node(self._value * other._value, Op.MULTIPLY, (self, other))

    def power(self, exponent: Operand) -> "Node":
        exponent = _lift(exponent)
        return Node(_safe_pow(self._value, exponent._value), Op.POWER, (self, exponent))

    def negate(self) -> "Node":
        return self.multiply(-1.0)

    def subtract(self, other: Operand) -> "Node":
        return self.add(_lift(other).negate())

    def divide(self, other: Operand) -> "Node":
        return self.multiply(_lift(other).power(-1.0))

    __add__ = add
    __mul__ = multiply
    __pow__ = power
    __sub__ = subtract
    __truediv__ = divide
    __neg__ = negate

    def __radd__(self, other: Operand) -> "Node":
        return _lift(other).add(self)

    def __rmul__(self, other: Operand) -> "Node":
        return _lift(other).multiply(self)

    def __rsub__(self, other: Operand) -> "Node":
        return _lift(other).subtract(self)

    def __rtruediv__(self, other: Operand) -> "Node":
        return _lift(other).divide(self)

    # Backward pass.

    def topological_order(self) -> List["Node"]:
        order: List[Node] = []
        visited = set()
        stack = [(self, False)]
        while stack:
            node, expanded = stack.pop()
            if expanded:
                order.append(node)
                continue
            if id(node) in visited:
                continue
            visited.add(id(node))
            stack.append((node, True))
            for operand in node.operands:
                if id(operand) not in visited:
                    stack.append((operand, False))
        return order

    def zero_grad(self) -> None:
        for node in self.topological_order():
            node.gradient = 0.0

    def compute_gradients(self) -> None:
        order = self.topological_order()
        for node in order:
            node.gradient = 0.0
        self.gradient = 1.0
        # Reverse topological order: every parent has pushed its full gradient
        # before a node forwards its own.
        for node in reversed(order):
            _push_gradient(node)


def _push_gradient(node: Node) -> None:
    g = node.gradient
    if node.op is Op.VARIABLE or node.op is Op.CONSTANT:
        return
    if node.op is Op.ADD:
        for operand in node.operands:
            operand.gradient += g
    elif node.op is Op.MULTIPLY:
        for i, operand in enumerate(node.operands):
            product = 1.0
            for j, sibling in enumerate(node.operands):
                if i != j:
                    product *= sibling._value
            operand.gradient += g * product
    elif node.op is Op.POWER:
        if len(node.operands) != 2:
            raise ValueError("Power nodes need exactly a base and an exponent")
        base, exponent = node.operands
        base.gradient += g * exponent._value * _safe_pow(base._value, exponent._value - 1.0)
        # NaN for base <= 0; exponents in this package are constants, so the
        # NaN never reaches a trainable leaf.
        exponent.gradient += g * node._value * _safe_log(base._value)
    else:
        raise ValueError(f"Unsupported operation: {node.op}")


def _safe_pow(base: float, exponent: float) -> float:
    base = float(base)
    exponent = float(exponent)
    if base == 0.0 and exponent < 0.0:
        return math.inf
    if base < 0.0 and not exponent.is_integer():
        return math.nan
    try:
        return base**exponent
    except OverflowError:
        return math.inf


def _safe_log(x: float) -> float:
    return math.log(x) if x > 0.0 else math.nan


def _lift(operand: Operand) -> Node:
    if isinstance(operand, Node):
        return operand
    return constant(float(operand))


def constant(value: float) -> Node:
    return Node(value, Op.CONSTANT)


def variable(value: float) -> Node:
    return Node(value, Op.VARIABLE)


def collect_variables(root: Node) -> List[Node]:
    return [n for n in root.topological_order() if n.op is Op.VARIABLE]


def snapshot(nodes: Sequence[Node]) -> Dict[int, float]:
    return {id(n): n.value for n in nodes}


def restore(nodes: Sequence[Node], values: Dict[int, float]) -> None:
    for n in nodes:
        n.value = values[id(n)]

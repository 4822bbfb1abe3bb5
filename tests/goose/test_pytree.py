from dataclasses import dataclass, field

import jax
import jax.numpy as jnp
import numpy as np
import pytest

from dsem.goose.pytree import (
    as_strong_pytree,
    concatenate_leaves,
    register_dataclass_as_pytree,
    slice_leaves,
    stack_leaves,
    where_leaves,
)

tree = {
    "foo": jnp.zeros((3, 3, 1)),
    "bar": (jnp.ones((3, 1)), jnp.arange(18).reshape((3, 3, 2))),
}


@register_dataclass_as_pytree
@dataclass
class Counter:
    value: jax.Array
    calls: int = field(init=False)

    def __post_init__(self):
        self.calls = 0


def test_dataclass_roundtrip() -> None:
    counter = Counter(jnp.array(1.0))
    counter.calls = 5

    leaves, treedef = jax.tree_util.tree_flatten(counter)
    restored = jax.tree_util.tree_unflatten(treedef, leaves)

    assert len(leaves) == 2
    assert isinstance(restored, Counter)
    # unflattening does not call __post_init__
    assert restored.calls == 5


def test_dataclass_under_jit() -> None:
    @jax.jit
    def bump(counter: Counter) -> Counter:
        counter.value = counter.value + 1.0
        return counter

    counter = bump(Counter(jnp.array(1.0)))
    assert float(counter.value) == 2.0


def test_register_requires_dataclass() -> None:
    class NotADataclass:
        pass

    with pytest.raises(TypeError):
        register_dataclass_as_pytree(NotADataclass)


def test_slice() -> None:
    nt = slice_leaves(tree, jnp.s_[:, ..., 0])

    assert nt["foo"].shape == (3, 3)
    assert nt["bar"][0].shape == (3,)
    assert nt["bar"][1].shape == (3, 3)


def test_stack_and_concatenate() -> None:
    stacked = stack_leaves([tree, tree], axis=1)
    assert stacked["foo"].shape == (3, 2, 3, 1)
    assert stacked["bar"][1].shape == (3, 2, 3, 2)

    combined = concatenate_leaves([tree, tree], axis=1)
    assert combined["foo"].shape == (3, 6, 1)
    assert combined["bar"][0].shape == (3, 2)


def test_where_leaves() -> None:
    a = {"x": jnp.zeros(2), "y": jnp.zeros(())}
    b = {"x": jnp.ones(2), "y": jnp.ones(())}

    assert np.array_equal(where_leaves(True, a, b)["x"], a["x"])
    assert float(where_leaves(False, a, b)["y"]) == 1.0


def test_as_strong_pytree() -> None:
    weak = {"x": jnp.asarray(1.0), "n": 3}
    strong = as_strong_pytree(weak)

    assert not strong["x"].weak_type
    assert not strong["n"].weak_type
    assert strong["n"].dtype == jnp.asarray(3).dtype

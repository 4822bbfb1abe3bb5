"""
Pytree utilities.
"""

import dataclasses
from typing import TypeVar

import jax
import jax.numpy as jnp
import jax.tree_util

T = TypeVar("T")


def register_dataclass_as_pytree(cls):
    """
    Class decorator that registers a dataclass as a pytree node.

    All instance attributes, including fields with ``init=False``, become children.
    Unflattening bypasses ``__init__`` and ``__post_init__``.
    """

    if not dataclasses.is_dataclass(cls):
        raise TypeError(f"{cls} must be a dataclass")

    def flatten(obj):
        # vars() instead of dataclasses.asdict(), which would recurse into children
        return jax.tree_util.tree_flatten(vars(obj))

    def unflatten(treedef, children):
        obj = cls.__new__(cls)
        vars(obj).update(jax.tree_util.tree_unflatten(treedef, children))
        return obj

    jax.tree_util.register_pytree_node(cls, flatten, unflatten)

    return cls


def where_leaves(condition, on_true: T, on_false: T) -> T:
    """Selects leafwise between two pytrees with the same structure."""
    return jax.tree_util.tree_map(
        lambda x, y: jnp.where(condition, x, y), on_true, on_false
    )


def slice_leaves(pytree, idx):
    """
    Applies the index ``idx`` (built with ``jnp.s_`` or ``np.s_``) to every leaf.
    """
    return jax.tree_util.tree_map(lambda x: x[idx], pytree)


def stack_leaves(pytrees, axis=0):
    """Stacks the leaves of a sequence of pytrees along a new axis."""
    return jax.tree_util.tree_map(lambda *xs: jnp.stack(xs, axis=axis), *pytrees)


def concatenate_leaves(pytrees, axis=0):
    """Concatenates the leaves of a sequence of pytrees along an existing axis."""
    return jax.tree_util.tree_map(lambda *xs: jnp.concatenate(xs, axis=axis), *pytrees)


def as_strong_pytree(pytree: T) -> T:
    """
    Converts every leaf into an array with a strong dtype, so that jitted functions
    are not recompiled when weakly and strongly typed inputs alternate.

    See <https://jax.readthedocs.io/en/latest/type_promotion.html>.
    """
    return jax.tree_util.tree_map(
        lambda x: jnp.asarray(x, dtype=jnp.asarray(x).dtype), pytree
    )

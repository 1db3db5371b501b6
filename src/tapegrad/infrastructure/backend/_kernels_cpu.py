"""
NumPy reference kernels for the CPU backend.

Kernels are plain functions registered by name in `CPU_KERNELS` through
`register_kernel`. The graph resolves them via `backend.kernel(name)` and
never imports this module directly, so another backend can provide the same
names with different implementations.

Conventions
-----------
- Forward kernels write into a preallocated `out` buffer.
- Gradient kernels take `(dst, beta, ...)` and compute
  ``dst = beta * dst + contribution``. `beta` is either 0.0 (dst is a fresh,
  uninitialised buffer and must be overwritten) or 1.0 (accumulate).
  The `beta == 0` branch never reads `dst`, so garbage in a fresh buffer
  cannot leak into the result.
- View kernels (`narrow`, `select`, `permute`, `transpose`, `view`) return
  NumPy views and never copy.
- All buffers are float32.
"""

from __future__ import annotations

from typing import Callable, Dict, Sequence, Tuple

import numpy as np

from ...domain._errors import ShapeError

CPU_KERNELS: Dict[str, Callable[..., object]] = {}


def register_kernel(name: str) -> Callable[[Callable[..., object]], Callable[..., object]]:
    """
    Register a function as the CPU kernel called `name`.

    Parameters
    ----------
    name : str
        Kernel name used by `NumpyBackend.kernel`.

    Returns
    -------
    Callable
        Decorator returning the function unchanged.

    Raises
    ------
    ValueError
        If a kernel with the same name is already registered.
    """

    def decorator(fn: Callable[..., object]) -> Callable[..., object]:
        if name in CPU_KERNELS:
            raise ValueError(f"Kernel '{name}' is already registered")
        CPU_KERNELS[name] = fn
        return fn

    return decorator


def _blend(dst: np.ndarray, beta: float, contribution: np.ndarray) -> None:
    if beta == 0.0:
        np.copyto(dst, contribution)
    else:
        dst += contribution


# ---------------------------------------------------------------------
# Memory
# ---------------------------------------------------------------------
@register_kernel("fill")
def fill(out: np.ndarray, value: float) -> None:
    out.fill(value)


@register_kernel("copy")
def copy(dst: np.ndarray, src: np.ndarray) -> None:
    np.copyto(dst, src)


@register_kernel("concat")
def concat(out: np.ndarray, axis: int, arrays: Sequence[np.ndarray]) -> None:
    np.concatenate(tuple(arrays), axis=axis, out=out)


# ---------------------------------------------------------------------
# Elementwise arithmetic
# ---------------------------------------------------------------------
@register_kernel("add")
def add(out: np.ndarray, a: np.ndarray, b: np.ndarray) -> None:
    np.add(a, b, out=out)


@register_kernel("accumulate")
def accumulate(
    dst: np.ndarray, beta: float, src: np.ndarray, alpha: float = 1.0
) -> None:
    """
    ``dst = beta * dst + alpha * src``.
    """
    if alpha == 1.0:
        _blend(dst, beta, src)
    elif beta == 0.0:
        np.multiply(src, alpha, out=dst)
    else:
        dst += alpha * src


@register_kernel("mul")
def mul(out: np.ndarray, a: np.ndarray, b: np.ndarray) -> None:
    np.multiply(a, b, out=out)


@register_kernel("mul_scalar")
def mul_scalar(out: np.ndarray, a: np.ndarray, v: float) -> None:
    np.multiply(a, v, out=out)


@register_kernel("add_mul")
def add_mul(dst: np.ndarray, beta: float, a: np.ndarray, b: np.ndarray) -> None:
    """
    ``dst = beta * dst + a * b``.
    """
    if beta == 0.0:
        np.multiply(a, b, out=dst)
    else:
        dst += a * b


@register_kernel("mul_mul_add")
def mul_mul_add(
    out: np.ndarray, a: np.ndarray, b: np.ndarray, c: np.ndarray, d: np.ndarray
) -> None:
    np.multiply(a, b, out=out)
    out += c * d


# ---------------------------------------------------------------------
# Activations
# ---------------------------------------------------------------------
@register_kernel("sigmoid")
def sigmoid(out: np.ndarray, x: np.ndarray) -> None:
    # exp(-log(1 + exp(-x))) avoids overflow for large |x|
    out[...] = np.exp(-np.logaddexp(0.0, -x))


@register_kernel("sigmoid_grad")
def sigmoid_grad(dst: np.ndarray, beta: float, out: np.ndarray, g: np.ndarray) -> None:
    _blend(dst, beta, g * out * (1.0 - out))


@register_kernel("tanh")
def tanh(out: np.ndarray, x: np.ndarray) -> None:
    np.tanh(x, out=out)


@register_kernel("tanh_grad")
def tanh_grad(dst: np.ndarray, beta: float, out: np.ndarray, g: np.ndarray) -> None:
    _blend(dst, beta, g * (1.0 - out * out))


@register_kernel("add_tanh")
def add_tanh(out: np.ndarray, a: np.ndarray, b: np.ndarray) -> None:
    np.add(a, b, out=out)
    np.tanh(out, out=out)


@register_kernel("relu")
def relu(out: np.ndarray, x: np.ndarray) -> None:
    np.maximum(x, 0.0, out=out)


@register_kernel("relu_grad")
def relu_grad(dst: np.ndarray, beta: float, x: np.ndarray, g: np.ndarray) -> None:
    _blend(dst, beta, np.where(x > 0.0, g, 0.0).astype(np.float32, copy=False))


@register_kernel("softmax")
def softmax(out: np.ndarray, x: np.ndarray) -> None:
    """
    Softmax over the last axis, shifted by the row maximum for stability.
    """
    shifted = x - x.max(axis=-1, keepdims=True)
    e = np.exp(shifted)
    np.divide(e, e.sum(axis=-1, keepdims=True), out=out)


@register_kernel("softmax_grad")
def softmax_grad(dst: np.ndarray, beta: float, out: np.ndarray, g: np.ndarray) -> None:
    """
    Jacobian-vector product of softmax:
    ``dx = out * (g - sum(g * out, axis=-1))``.
    """
    dot = (g * out).sum(axis=-1, keepdims=True)
    _blend(dst, beta, out * (g - dot))


# ---------------------------------------------------------------------
# Matrix products
# ---------------------------------------------------------------------
def _addmm_impl(
    out: np.ndarray,
    beta: float,
    c: np.ndarray,
    alpha: float,
    a: np.ndarray,
    b: np.ndarray,
) -> None:
    prod = np.matmul(a, b)
    if beta == 0.0:
        if alpha == 1.0:
            np.copyto(out, prod)
        else:
            np.multiply(prod, alpha, out=out)
        return
    if alpha != 1.0:
        prod *= alpha
    if c is out:
        if beta != 1.0:
            out *= beta
        out += prod
    else:
        out[...] = beta * c + prod


@register_kernel("addmm")
def addmm(
    out: np.ndarray,
    beta: float,
    c: np.ndarray,
    alpha: float,
    a: np.ndarray,
    b: np.ndarray,
) -> None:
    """
    ``out = beta * c + alpha * (a @ b)`` for 2-D operands.

    When `beta` is 0, `c` is ignored (it may alias an uninitialised `out`).
    """
    if a.ndim != 2 or b.ndim != 2:
        raise ShapeError("addmm", f"expected 2-D operands, got {a.shape} and {b.shape}")
    _addmm_impl(out, beta, c, alpha, a, b)


@register_kernel("addmm_batch")
def addmm_batch(
    out: np.ndarray,
    beta: float,
    c: np.ndarray,
    alpha: float,
    a: np.ndarray,
    b: np.ndarray,
) -> None:
    """
    Batched `addmm` over the leading axis of 3-D operands.
    """
    if a.ndim != 3 or b.ndim != 3:
        raise ShapeError(
            "addmm_batch", f"expected 3-D operands, got {a.shape} and {b.shape}"
        )
    _addmm_impl(out, beta, c, alpha, a, b)


# ---------------------------------------------------------------------
# Views
# ---------------------------------------------------------------------
@register_kernel("narrow")
def narrow(arr: np.ndarray, dim: int, start: int, length: int) -> np.ndarray:
    idx = [slice(None)] * arr.ndim
    idx[dim] = slice(start, start + length)
    return arr[tuple(idx)]


@register_kernel("select")
def select(arr: np.ndarray, dim: int, index: int) -> np.ndarray:
    idx: list = [slice(None)] * arr.ndim
    idx[dim] = index
    return arr[tuple(idx)]


@register_kernel("permute")
def permute(arr: np.ndarray, dims: Sequence[int]) -> np.ndarray:
    return np.transpose(arr, tuple(dims))


@register_kernel("transpose")
def transpose(arr: np.ndarray, dim1: int, dim2: int) -> np.ndarray:
    return np.swapaxes(arr, dim1, dim2)


@register_kernel("view")
def view(arr: np.ndarray, shape: Tuple[int, ...]) -> np.ndarray:
    """
    Reshape without copying.

    Raises
    ------
    ShapeError
        If the element count differs, or if the stride layout of `arr`
        cannot express `shape` without a copy.
    """
    if int(np.prod(shape)) != arr.size:
        raise ShapeError(
            "view", f"cannot view {arr.shape} ({arr.size} elements) as {tuple(shape)}"
        )
    out = arr.reshape(shape)
    if arr.size and not np.may_share_memory(out, arr):
        raise ShapeError(
            "view",
            f"layout of {arr.shape} (strides {arr.strides}) cannot be viewed as "
            f"{tuple(shape)} without a copy",
        )
    return out


# ---------------------------------------------------------------------
# Normalization and noise
# ---------------------------------------------------------------------
@register_kernel("layer_norm")
def layer_norm(
    out: np.ndarray,
    x: np.ndarray,
    alpha: np.ndarray,
    beta: np.ndarray,
    eps: float,
) -> None:
    """
    Row-wise layer normalization over the last axis:
    ``out = alpha * (x - mean) / sqrt(var + eps) + beta``.
    """
    mean = x.mean(axis=-1, keepdims=True)
    centered = x - mean
    var = (centered * centered).mean(axis=-1, keepdims=True)
    np.multiply(centered / np.sqrt(var + eps), alpha, out=out)
    out += beta


@register_kernel("layer_norm_grad")
def layer_norm_grad(
    g: np.ndarray,
    x: np.ndarray,
    alpha: np.ndarray,
    eps: float,
) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Closed-form layer-norm gradient.

    Statistics are recomputed from `x`; nothing is cached from the forward
    pass. Returns fresh arrays ``(dx, dalpha, dbeta)`` shaped like `x`,
    `alpha` and `alpha` respectively.
    """
    n = x.shape[-1]
    mean = x.mean(axis=-1, keepdims=True)
    centered = x - mean
    var = (centered * centered).mean(axis=-1, keepdims=True)
    inv_std = 1.0 / np.sqrt(var + eps)
    x_hat = centered * inv_std

    reduce_axes = tuple(range(g.ndim - 1))
    dbeta = g.sum(axis=reduce_axes).reshape(alpha.shape)
    dalpha = (g * x_hat).sum(axis=reduce_axes).reshape(alpha.shape)

    dx_hat = g * alpha.reshape(-1)
    dx = (inv_std / n) * (
        n * dx_hat
        - dx_hat.sum(axis=-1, keepdims=True)
        - x_hat * (dx_hat * x_hat).sum(axis=-1, keepdims=True)
    )
    return (
        dx.astype(np.float32, copy=False),
        dalpha.astype(np.float32, copy=False),
        dbeta.astype(np.float32, copy=False),
    )


@register_kernel("bernoulli_mask")
def bernoulli_mask(out: np.ndarray, keep_prob: float, rng: np.random.Generator) -> None:
    """
    Fill `out` with 1.0 where a uniform draw is below `keep_prob`, else 0.0.
    """
    out[...] = rng.random(out.shape, dtype=np.float32) < keep_prob


@register_kernel("position_encoding")
def position_encoding(out: np.ndarray) -> None:
    """
    Sinusoidal position table: even columns hold sin, odd columns cos.
    """
    rows, cols = out.shape
    pos = np.arange(rows, dtype=np.float64)[:, None]
    i = np.arange(cols, dtype=np.float64)[None, :]
    angle = pos / np.power(10000.0, (2.0 * (i // 2)) / cols)
    out[:, 0::2] = np.sin(angle[:, 0::2])
    out[:, 1::2] = np.cos(angle[:, 1::2])

"""
Vector-similarity primitives behind a small backend interface.

Both backends implement the same three operations with identical semantics:

* ``batch_similarity(query, vectors)``  -> (M,) cosine scores
* ``pairwise_similarity(rows, cols)``   -> (R, K) cosine matrix
* ``row_max(matrix, rows, cols)``       -> (R,) max per row

Cosine against a zero-magnitude vector is 0.  Vectors whose lengths disagree
raise ``DimensionMismatchError``.  Empty inputs produce empty outputs.

``NumpyBackend`` is always available.  ``TorchBackend`` runs on CUDA or Apple
MPS when torch finds one; hosts without torch get ``UnavailableAccelerator``
so callers never have to special-case a missing accelerator.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Optional, Protocol, runtime_checkable

import numpy as np
from loguru import logger

from .config import MMR_GPU_THRESHOLD
from .errors import BackendUnavailableError, DimensionMismatchError
from .pipeline_types import as_matrix, as_vector

try:
    import torch  # type: ignore
except ImportError:  # accelerator support is an optional extra
    torch = None  # type: ignore


class BackendKind(str, Enum):
    CPU = "cpu"
    GPU = "gpu"


class BackendPreference(str, Enum):
    AUTO = "auto"
    CPU = "cpu"
    GPU = "gpu"


@runtime_checkable
class ComputeBackend(Protocol):
    name: str
    kind: BackendKind

    @property
    def is_available(self) -> bool: ...

    def batch_similarity(self, query: Any, vectors: Any) -> np.ndarray: ...

    def pairwise_similarity(self, rows: Any, cols: Any) -> np.ndarray: ...

    def row_max(self, matrix: Any, rows: int, cols: int) -> np.ndarray: ...


# ---------------------------------------------------------------------------
# Shape checks shared by every backend
# ---------------------------------------------------------------------------


def _query_and_matrix(query: Any, vectors: Any):
    q = as_vector(query)
    mat = as_matrix(vectors)
    if mat.shape[0] and mat.shape[1] != q.shape[0]:
        raise DimensionMismatchError(q.shape[0], mat.shape[1])
    return q, mat


def _row_and_col_matrices(rows: Any, cols: Any):
    r = as_matrix(rows)
    c = as_matrix(cols)
    if r.shape[0] and c.shape[0] and r.shape[1] != c.shape[1]:
        raise DimensionMismatchError(r.shape[1], c.shape[1])
    return r, c


def _check_grid(matrix: Any, rows: int, cols: int) -> np.ndarray:
    if rows < 0 or cols < 0:
        raise ValueError(f"rows and cols must be non-negative, got {rows}x{cols}")
    arr = np.asarray(matrix, dtype="float32")
    if arr.size != rows * cols:
        raise DimensionMismatchError(rows * cols, arr.size, what="similarity matrix")
    return arr.reshape(rows, cols)


def _unit_rows(mat: np.ndarray) -> np.ndarray:
    # float64 so squaring large float32 components cannot overflow the norm
    mat = mat.astype("float64", copy=False)
    norms = np.linalg.norm(mat, axis=1, keepdims=True)
    out = np.zeros_like(mat)
    np.divide(mat, norms, out=out, where=norms > 0)
    return out.astype("float32")


# ---------------------------------------------------------------------------
# CPU
# ---------------------------------------------------------------------------


class NumpyBackend:
    """Vectorised numpy implementation; the default below the GPU threshold."""

    name = "numpy"
    kind = BackendKind.CPU

    @property
    def is_available(self) -> bool:
        return True

    def batch_similarity(self, query: Any, vectors: Any) -> np.ndarray:
        q, mat = _query_and_matrix(query, vectors)
        if mat.shape[0] == 0:
            return np.zeros(0, dtype="float32")
        return _unit_rows(mat) @ _unit_rows(q.reshape(1, -1))[0]

    def pairwise_similarity(self, rows: Any, cols: Any) -> np.ndarray:
        r, c = _row_and_col_matrices(rows, cols)
        if r.shape[0] == 0 or c.shape[0] == 0:
            return np.zeros((r.shape[0], c.shape[0]), dtype="float32")
        return _unit_rows(r) @ _unit_rows(c).T

    def row_max(self, matrix: Any, rows: int, cols: int) -> np.ndarray:
        grid = _check_grid(matrix, rows, cols)
        if cols == 0:
            return np.zeros(rows, dtype="float32")
        return grid.max(axis=1)


# ---------------------------------------------------------------------------
# Accelerator
# ---------------------------------------------------------------------------


def _probe_device() -> Optional[str]:
    if torch is None:
        return None
    if torch.cuda.is_available():
        return "cuda"
    mps = getattr(torch.backends, "mps", None)
    if mps is not None and mps.is_available():
        return "mps"
    return None


class TorchBackend:
    """
    torch implementation running in float32 on an accelerator device.

    ``device=None`` probes for CUDA, then MPS.  An explicit device string
    (including ``"cpu"``) is used as given, which is how the cross-backend
    tests exercise this code path on machines without a GPU.
    """

    kind = BackendKind.GPU

    def __init__(self, device: Optional[str] = None):
        self._device = None
        if torch is not None:
            dev = device or _probe_device()
            if dev is not None:
                self._device = torch.device(dev)
        if self._device is None:
            logger.debug("No torch accelerator device found; TorchBackend unavailable")

    @property
    def name(self) -> str:
        return f"torch:{self._device}" if self._device is not None else "torch:unavailable"

    @property
    def is_available(self) -> bool:
        return self._device is not None

    def _tensor(self, arr: np.ndarray):
        if self._device is None:
            raise BackendUnavailableError("torch accelerator is not available on this host")
        return torch.as_tensor(arr, dtype=torch.float32, device=self._device)

    @staticmethod
    def _to_numpy(t) -> np.ndarray:
        return t.detach().to("cpu").numpy().astype("float32", copy=False)

    def _unit_rows(self, t):
        # scale by the largest component first; float64 is not available on every device
        peak = t.abs().amax(dim=1, keepdim=True)
        t = torch.where(peak > 0, t / torch.where(peak > 0, peak, torch.ones_like(peak)), torch.zeros_like(t))
        norms = t.norm(dim=1, keepdim=True)
        safe = torch.where(norms > 0, norms, torch.ones_like(norms))
        return torch.where(norms > 0, t / safe, torch.zeros_like(t))

    def batch_similarity(self, query: Any, vectors: Any) -> np.ndarray:
        q, mat = _query_and_matrix(query, vectors)
        if mat.shape[0] == 0:
            return np.zeros(0, dtype="float32")

        tq = self._unit_rows(self._tensor(q.reshape(1, -1)))[0]
        tm = self._unit_rows(self._tensor(mat))
        return self._to_numpy(tm @ tq)

    def pairwise_similarity(self, rows: Any, cols: Any) -> np.ndarray:
        r, c = _row_and_col_matrices(rows, cols)
        if r.shape[0] == 0 or c.shape[0] == 0:
            return np.zeros((r.shape[0], c.shape[0]), dtype="float32")
        tr = self._unit_rows(self._tensor(r))
        tc = self._unit_rows(self._tensor(c))
        return self._to_numpy(tr @ tc.T)

    def row_max(self, matrix: Any, rows: int, cols: int) -> np.ndarray:
        grid = _check_grid(matrix, rows, cols)
        if cols == 0:
            return np.zeros(rows, dtype="float32")
        return self._to_numpy(self._tensor(grid).max(dim=1).values)


class UnavailableAccelerator:
    """Stand-in for hosts without an accelerator; never selected."""

    name = "unavailable"
    kind = BackendKind.GPU

    @property
    def is_available(self) -> bool:
        return False

    def _fail(self, *_args, **_kwargs):
        raise BackendUnavailableError("no accelerator backend on this host")

    batch_similarity = _fail
    pairwise_similarity = _fail
    row_max = _fail


def default_accelerator() -> ComputeBackend:
    if torch is None:
        return UnavailableAccelerator()
    return TorchBackend()


# ---------------------------------------------------------------------------
# Selection
# ---------------------------------------------------------------------------


def choose_backend_kind(
    accelerator_available: bool,
    candidate_count: int,
    threshold: int = MMR_GPU_THRESHOLD,
    preference: BackendPreference = BackendPreference.AUTO,
) -> BackendKind:
    """
    Pure selection policy.

    AUTO uses the accelerator when it is available and ``candidate_count``
    reaches ``threshold``.  An explicit GPU preference still needs an
    available accelerator.
    """
    if preference == BackendPreference.CPU or not accelerator_available:
        return BackendKind.CPU
    if preference == BackendPreference.GPU:
        return BackendKind.GPU
    return BackendKind.GPU if candidate_count >= threshold else BackendKind.CPU


def select_backend(
    candidate_count: int,
    cpu: ComputeBackend,
    accelerator: ComputeBackend,
    threshold: int = MMR_GPU_THRESHOLD,
    preference: BackendPreference = BackendPreference.AUTO,
) -> ComputeBackend:
    kind = choose_backend_kind(accelerator.is_available, candidate_count, threshold, preference)
    backend = accelerator if kind == BackendKind.GPU else cpu
    logger.debug(
        "Selected {} backend for {} candidates (threshold={}, preference={})",
        backend.name, candidate_count, threshold, preference.value,
    )
    return backend

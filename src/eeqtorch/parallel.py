from __future__ import annotations

"""Fan-out/fan-in over the outer atom index.

Each worker receives a subset of outer atoms, accumulates into private
tensors shaped like the result, and the partial tensors are summed once in
the calling thread. Torch releases the GIL inside its kernels, so a thread
pool gives real overlap for the dense pair blocks.
"""

from concurrent.futures import ThreadPoolExecutor
from typing import Callable, List, Sequence, Tuple

import torch

Tensor = torch.Tensor

__all__ = ["split_rows", "fan_out_reduce"]


def split_rows(nat: int, workers: int, device=None) -> List[Tensor]:
    """Distribute atoms 0..nat-1 round-robin over `workers` index sets.

    Interleaving balances the triangular j < i pair loops.
    """
    workers = max(1, min(int(workers), nat))
    rows = torch.arange(nat, device=device)
    return [rows[w::workers] for w in range(workers) if rows[w::workers].numel() > 0]


def fan_out_reduce(
    nat: int,
    build: Callable[[Tensor], Sequence[Tensor]],
    init: Sequence[Tensor],
    workers: int = 1,
) -> Tuple[Tensor, ...]:
    """Run ``build(rows)`` per worker and add every partial result onto copies of `init`.

    `build` must return a tuple of tensors matching the shapes of `init`.
    """
    out = tuple(t.clone() for t in init)
    if nat == 0:
        return out
    blocks = split_rows(nat, workers, device=init[0].device)
    if len(blocks) == 1:
        partials = [build(blocks[0])]
    else:
        with ThreadPoolExecutor(max_workers=len(blocks)) as ex:
            partials = list(ex.map(build, blocks))
    for part in partials:
        for acc, loc in zip(out, part):
            acc.add_(loc)
    return out

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional, Sequence

import torch

from .params.eeq2019 import AA2AU

__all__ = ["Structure"]


@dataclass(frozen=True)
class Structure:
    """Read-only atomic structure in atomic units.

    numbers : (nat,) atomic numbers
    positions : (nat,3) Cartesian coordinates (Bohr)
    lattice : (3,3) lattice vectors as rows (Bohr), None for molecules
    periodic : (3,) periodicity flags
    charge : total charge of the system
    """

    numbers: torch.Tensor
    positions: torch.Tensor
    lattice: Optional[torch.Tensor] = None
    periodic: torch.Tensor = field(default_factory=lambda: torch.zeros(3, dtype=torch.bool))
    charge: float = 0.0

    def __post_init__(self) -> None:
        if self.positions.ndim != 2 or self.positions.shape[-1] != 3:
            raise ValueError(f"positions must be shape (nat,3), got {tuple(self.positions.shape)}")
        if self.numbers.shape[0] != self.positions.shape[0]:
            raise ValueError(
                f"numbers ({self.numbers.shape[0]}) and positions ({self.positions.shape[0]}) disagree in length"
            )
        if bool(self.periodic.any()):
            if self.lattice is None or tuple(self.lattice.shape) != (3, 3):
                raise ValueError("Periodic structures require a (3,3) lattice.")
            vol = torch.det(self.lattice)
            if not torch.isfinite(vol) or abs(float(vol)) < 1e-12:
                raise ValueError("Lattice vectors are linearly dependent (zero cell volume).")

    @classmethod
    def new(
        cls,
        numbers: Sequence[int] | torch.Tensor,
        positions: Sequence[Sequence[float]] | torch.Tensor,
        lattice: Sequence[Sequence[float]] | torch.Tensor | None = None,
        periodic: Sequence[bool] | torch.Tensor | None = None,
        charge: float = 0.0,
        *,
        dtype: torch.dtype = torch.float64,
        device: torch.device | None = None,
    ) -> "Structure":
        """Build a structure from plain sequences; `periodic` defaults to all-True when a lattice is given."""
        num = torch.as_tensor(numbers, dtype=torch.int64, device=device)
        pos = torch.as_tensor(positions, dtype=dtype, device=device).reshape(-1, 3)
        lat = None if lattice is None else torch.as_tensor(lattice, dtype=dtype, device=device)
        if periodic is None:
            per = torch.full((3,), lat is not None, dtype=torch.bool, device=device)
        else:
            per = torch.as_tensor(periodic, dtype=torch.bool, device=device)
        return cls(numbers=num, positions=pos, lattice=lat, periodic=per, charge=float(charge))

    @classmethod
    def from_atoms(cls, atoms, charge: Optional[float] = None, *, dtype: torch.dtype = torch.float64, device=None) -> "Structure":
        """Convert an ``ase.Atoms`` object (Å) to a structure in Bohr.

        The total charge is taken from ``charge`` or ``atoms.info['charge']`` (default 0).
        """
        pbc = [bool(x) for x in atoms.get_pbc()]
        lattice = atoms.get_cell().array * AA2AU if any(pbc) else None
        if charge is None:
            charge = float(atoms.info.get("charge", 0.0))
        return cls.new(
            atoms.get_atomic_numbers(),
            atoms.get_positions() * AA2AU,
            lattice=lattice,
            periodic=pbc,
            charge=charge,
            dtype=dtype,
            device=device,
        )

    @property
    def nat(self) -> int:
        return int(self.numbers.shape[0])

    @property
    def is_periodic(self) -> bool:
        return bool(self.periodic.any())

    def with_positions(self, positions: torch.Tensor, lattice: Optional[torch.Tensor] = None) -> "Structure":
        """Copy with displaced atoms (and optionally a deformed lattice)."""
        return Structure(
            numbers=self.numbers,
            positions=positions,
            lattice=self.lattice if lattice is None else lattice,
            periodic=self.periodic,
            charge=self.charge,
        )

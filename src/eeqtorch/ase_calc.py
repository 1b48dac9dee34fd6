from __future__ import annotations

from typing import Any, Optional

import logging

import numpy as np
import torch
from ase.calculators.calculator import Calculator, PropertyNotImplementedError, all_changes
from ase.stress import full_3x3_to_voigt_6_stress

from .charges.eeq import EEQModel
from .device import get_device, set_default_dtype
from .params.eeq2019 import AA2AU
from .structure import Structure

EH2EV = 27.211386245988
logger = logging.getLogger(__name__)


class EEQCalculator(Calculator):
    """ASE calculator for the EEQ electrostatic energy and charges.

    Energies in eV, forces in eV/Å, stress in eV/Å³ (periodic cells only).
    The total charge is taken from ``total_charge`` if given, otherwise from
    ``atoms.info["charge"]`` (default 0).
    """

    implemented_properties = ["energy", "free_energy", "energies", "forces", "stress", "charges"]

    def __init__(
        self,
        model: Optional[EEQModel] = None,
        parameters: Optional[str] = None,  # TOML parameter file, alternative to `model`
        device: Optional[str] = None,
        dtype: torch.dtype = torch.float64,
        workers: int = 1,
        total_charge: Optional[float] = None,
        solver_log: bool = True,
        label: Optional[str] = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(label=label, **kwargs)
        if model is not None and parameters is not None:
            raise ValueError("Pass either an EEQModel or a parameter file, not both.")
        self.dtype = set_default_dtype(dtype)
        self.device = get_device(device)
        if model is None:
            model = EEQModel.from_file(parameters) if parameters is not None else EEQModel.param2019()
        model.params = model.params.to(device=self.device, dtype=self.dtype)
        self.model = model
        if int(workers) < 1:
            raise ValueError("workers must be >= 1")
        self._workers = int(workers)
        self._total_charge = None if total_charge is None else float(total_charge)
        self._solver_log = bool(solver_log)

    def _structure(self, atoms) -> Structure:
        charge = self._total_charge
        if charge is None:
            charge = float(atoms.info.get("charge", 0.0))
        return Structure.from_atoms(atoms, charge=charge, dtype=self.dtype, device=self.device)

    def calculate(self, atoms=None, properties=("energy",), system_changes=all_changes):  # type: ignore[override]
        super().calculate(atoms, properties, system_changes)
        mol = self._structure(self.atoms)
        self.model.check_species(mol.numbers)
        want_grad = any(p in properties for p in ("forces", "stress"))
        if "stress" in properties and not mol.is_periodic:
            raise PropertyNotImplementedError("Stress is only available for periodic systems.")

        # optionally keep per-call solver diagnostics out of the log
        solver_logger = logging.getLogger("eeqtorch.charges.eeq")
        prev_level = solver_logger.level
        if not self._solver_log:
            solver_logger.setLevel(logging.WARNING)
        try:
            res = self.model.evaluate(mol, energy=True, gradient=want_grad, workers=self._workers)
        finally:
            solver_logger.setLevel(prev_level)

        energies = res.energy.detach().cpu().numpy() * EH2EV
        self.results["energies"] = energies
        self.results["energy"] = float(energies.sum())
        self.results["free_energy"] = self.results["energy"]
        self.results["charges"] = res.charges.detach().cpu().numpy()
        if want_grad:
            grad = res.gradient.detach().cpu().numpy()
            self.results["forces"] = -grad * (EH2EV * AA2AU)
            if mol.is_periodic:
                sigma = res.sigma.detach().cpu().numpy() * EH2EV / self.atoms.get_volume()
                self.results["stress"] = full_3x3_to_voigt_6_stress(sigma)
        logger.debug(
            "EEQ calculation: nat=%d E=%.8f eV Q=%.3f", mol.nat, self.results["energy"], float(np.sum(self.results["charges"]))
        )

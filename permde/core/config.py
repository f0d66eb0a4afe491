"""
Test configuration.

All recognised options of a permutation test are enumerated here with their
defaults. Unknown option names raise ConfigurationError.
"""

from __future__ import annotations

import math
import operator
from dataclasses import asdict, dataclass, fields, replace
from typing import Any, Literal

from .exceptions import ConfigurationError

AdjustmentMethod = Literal["bh", "none"]

# Option spellings accepted in addition to the field names
_ALIASES = {
    "R": "n_perm",
    "log2FC_th": "log2fc_th",
}


@dataclass(frozen=True)
class PermDEConfig:
    """
    Options of a permutation differential-mean test.

    Parameters
    ----------
    n_perm : int, default=99
        Number of label shuffles (R). Also accepted as ``R``.
    log2fc_th : float, default=log2(1.2)
        Minimum absolute log2 fold change for a gene to be tested.
        Also accepted as ``log2FC_th``.
    mean_th : float, default=0.05
        Minimum geometric mean in the higher-mean group.
    min_nonzero : int, default=5
        Minimum number of non-zero observations in the higher-mean group.
    only_pos : bool, default=False
        Only test genes with ``mean1 > mean2``.
    only_top_n : int, optional
        After filtering, test only the N genes with largest ``|log2FC|``.
    eps : float, default=1.0
        Pseudocount of the geometric mean.
    seed : int, optional
        Seed of the shuffle stream. ``None`` draws fresh OS entropy.
    adjustment : {"bh", "none"}, default="bh"
        Multiple testing correction applied to both p-value flavours.
    batch_size : int, default=16
        Number of shuffles evaluated per kernel call. Only affects memory
        and speed, never the result.
    """

    n_perm: int = 99
    log2fc_th: float = math.log2(1.2)
    mean_th: float = 0.05
    min_nonzero: int = 5
    only_pos: bool = False
    only_top_n: int | None = None
    eps: float = 1.0
    seed: int | None = 0
    adjustment: AdjustmentMethod = "bh"
    batch_size: int = 16

    def __post_init__(self):
        for name in ("n_perm", "min_nonzero", "batch_size", "only_top_n"):
            value = getattr(self, name)
            if value is None and name == "only_top_n":
                continue
            try:
                object.__setattr__(self, name, operator.index(value))
            except TypeError:
                raise ConfigurationError(f"{name} must be an integer, got {value!r}") from None
        if self.n_perm < 1:
            raise ConfigurationError(f"n_perm must be an integer >= 1, got {self.n_perm}")
        if not (self.eps > 0 and math.isfinite(self.eps)):
            raise ConfigurationError(f"eps must be a finite value > 0, got {self.eps}")
        if self.log2fc_th < 0:
            raise ConfigurationError(f"log2fc_th must be >= 0, got {self.log2fc_th}")
        if self.mean_th < 0:
            raise ConfigurationError(f"mean_th must be >= 0, got {self.mean_th}")
        if self.min_nonzero < 0:
            raise ConfigurationError(f"min_nonzero must be >= 0, got {self.min_nonzero}")
        if self.only_top_n is not None and self.only_top_n < 1:
            raise ConfigurationError(
                f"only_top_n must be >= 1 or None, got {self.only_top_n}"
            )
        if self.batch_size < 1:
            raise ConfigurationError(f"batch_size must be >= 1, got {self.batch_size}")
        if self.adjustment not in ("bh", "none"):
            raise ConfigurationError(f"Unknown adjustment method: {self.adjustment!r}")

    @classmethod
    def from_dict(cls, options: dict[str, Any] | None = None) -> "PermDEConfig":
        """Build a config from keyword options, resolving aliases.

        Raises
        ------
        ConfigurationError
            If an option name is not recognised or given twice.
        """
        return cls(**_canonical_options(options or {}))

    def replace(self, **changes: Any) -> "PermDEConfig":
        """Return a validated copy with some options changed."""
        return replace(self, **_canonical_options(changes))

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def _canonical_options(options: dict[str, Any]) -> dict[str, Any]:
    known = {f.name for f in fields(PermDEConfig)}
    out: dict[str, Any] = {}
    for key, value in options.items():
        name = _ALIASES.get(key, key)
        if name not in known:
            raise ConfigurationError(
                f"Unrecognized option {key!r}. Valid options: {sorted(known | set(_ALIASES))}"
            )
        if name in out:
            raise ConfigurationError(f"Option {name!r} given more than once (via {key!r})")
        out[name] = value
    return out

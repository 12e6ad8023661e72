"""
Evaluator Configuration

Explicit configuration threaded through every interpreter at construction.
Nothing in the package reads a process-wide default: the nominal scale,
chain depth and slot count all come from an EvaluatorConfig instance.
"""

from dataclasses import dataclass, fields
from enum import Enum
from typing import Any, Dict, Optional

from .ckks_params import CKKSProfile, get_profile
from .common import MAX_NORM, is_pow2


class ExecutionPolicy(Enum):
    """How the linear algebra layer dispatches independent tile tasks."""
    SEQUENTIAL = "sequential"
    PARALLEL = "parallel"


@dataclass(frozen=True)
class EvaluatorConfig:
    """
    Immutable evaluator configuration.

    Attributes:
        num_slots: Plaintext slots per ciphertext (power of two)
        multiplicative_depth: Number of evaluation primes in the chain
        scale_bits: log2 of the nominal CKKS scale
        use_secure_params: Enforce the security table on the modulus chain
        max_norm: Relative error above which Debug reports a divergence
        noise_std: Encoding noise of the simulation backend
        seed: Seed for the simulation backend's noise generator
    """

    num_slots: int = 4096
    multiplicative_depth: int = 2
    scale_bits: int = 30
    use_secure_params: bool = True
    max_norm: float = MAX_NORM
    noise_std: float = 3.2
    seed: Optional[int] = None

    def validate(self) -> None:
        """
        Validate configuration values.

        Raises:
            ValueError: If any value is out of range.
        """
        if not is_pow2(self.num_slots):
            raise ValueError(f"num_slots={self.num_slots} must be a power of 2")
        if self.multiplicative_depth < 0:
            raise ValueError(
                f"multiplicative_depth={self.multiplicative_depth} must be non-negative"
            )
        if self.scale_bits < 1 or self.scale_bits > 60:
            raise ValueError(f"scale_bits={self.scale_bits} out of valid range [1, 60]")
        if self.max_norm <= 0:
            raise ValueError(f"max_norm={self.max_norm} must be positive")
        if self.noise_std < 0:
            raise ValueError(f"noise_std={self.noise_std} must be non-negative")

    @property
    def scale(self) -> float:
        """Nominal scale value (2^scale_bits)."""
        return 2.0 ** self.scale_bits

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to dictionary."""
        return {f.name: getattr(self, f.name) for f in fields(self)}

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> 'EvaluatorConfig':
        """Deserialize from dictionary, ignoring unknown keys."""
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in d.items() if k in known})

    @classmethod
    def from_profile(cls, profile: CKKSProfile, **overrides: Any) -> 'EvaluatorConfig':
        """
        Configuration whose for_depth chain reproduces a preset profile.

        Args:
            profile: FAST or SAFE
            **overrides: Individual fields to replace (e.g. seed)

        Raises:
            ValueError: If the profile has no preset.
        """
        params = get_profile(profile)
        base = cls(
            num_slots=params.slot_count,
            multiplicative_depth=params.max_level,
            scale_bits=params.scale_bits,
        )
        return resolve_config(base, **overrides)


def resolve_config(config: Optional[EvaluatorConfig] = None, **overrides: Any) -> EvaluatorConfig:
    """
    Build the effective configuration for an interpreter.

    Keyword overrides replace fields of `config` (or of the defaults when no
    config is given). The result is validated before it is returned.

    Raises:
        ValueError: If an override names an unknown field or a value is invalid.
    """
    base = config.to_dict() if config is not None else EvaluatorConfig().to_dict()
    unknown = set(overrides) - set(base)
    if unknown:
        raise ValueError(f"Unknown configuration fields: {sorted(unknown)}")
    base.update({k: v for k, v in overrides.items() if v is not None})
    resolved = EvaluatorConfig.from_dict(base)
    resolved.validate()
    return resolved

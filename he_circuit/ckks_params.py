"""
CKKS Parameters for HE Circuits

This module defines the CKKS modulus chain used by the Homomorphic and
ScaleEstimator interpreters.

Level convention: a chain with primes q_0, ..., q_L (plus one special
key-switching prime at the end) gives fresh ciphertexts level L. Level l
uses primes q_0..q_l, and rescaling at level l divides by q_l.

Profiles:
  - FAST: 8192 slots, two evaluation levels
  - SAFE: 8192 slots, three evaluation levels, wider scale
  - CUSTOM: built with CKKSParams.for_depth()
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Tuple

from .common import SPECIAL_PRIME_BITS, is_pow2


class CKKSProfile(Enum):
    """CKKS parameter profile selector."""
    FAST = "fast"
    SAFE = "safe"
    CUSTOM = "custom"


# Maximum total coefficient modulus bits per ring degree (128-bit security,
# HE standard). Rings outside the table are only usable with security
# enforcement disabled.
MAX_MOD_BITS = {
    1024: 27,
    2048: 54,
    4096: 109,
    8192: 218,
    16384: 438,
    32768: 881,
    65536: 1770,
}

# Smallest ring accepted when security is enforced.
MIN_SECURE_POLY_DEGREE = 1024


def poly_degree_to_max_mod_bits(poly_modulus_degree: int) -> int:
    """
    Maximum total modulus size (bits) for a ring degree.

    Raises:
        ValueError: If the degree is not in the security table.
    """
    if poly_modulus_degree not in MAX_MOD_BITS:
        raise ValueError(
            f"poly_modulus_degree={poly_modulus_degree} has no security bound; "
            f"supported: {sorted(MAX_MOD_BITS)}"
        )
    return MAX_MOD_BITS[poly_modulus_degree]


@dataclass(frozen=True)
class CKKSParams:
    """
    Immutable CKKS encryption parameters.

    The coefficient modulus lists every prime of the chain, the special
    key-switching prime last. Primes are modelled by their bit size; the
    prime value used for rescaling is 2^bits.
    """

    # Polynomial ring degree (N) - determines slot count (N/2)
    poly_modulus_degree: int

    # Coefficient modulus bit lengths, special prime last
    coeff_modulus_bits: Tuple[int, ...]

    # Scale for encoding (2^scale_bits)
    scale_bits: int

    # Profile identifier
    profile: CKKSProfile = CKKSProfile.CUSTOM

    # Level of a fresh ciphertext (number of primes minus the special one, minus one)
    max_level: int = field(init=False)

    # Number of SIMD slots (N/2)
    slot_count: int = field(init=False)

    # Actual scale value
    scale: float = field(init=False)

    def __post_init__(self):
        """Compute derived parameters."""
        object.__setattr__(self, 'coeff_modulus_bits', tuple(self.coeff_modulus_bits))
        object.__setattr__(self, 'max_level', len(self.coeff_modulus_bits) - 2)
        object.__setattr__(self, 'slot_count', self.poly_modulus_degree // 2)
        object.__setattr__(self, 'scale', 2.0 ** self.scale_bits)

    @classmethod
    def for_depth(
        cls,
        num_slots: int,
        multiplicative_depth: int,
        scale_bits: int,
    ) -> 'CKKSParams':
        """
        Build the chain [60, scale_bits x depth, 60] for a slot count.

        Args:
            num_slots: Number of plaintext slots (N/2)
            multiplicative_depth: Number of evaluation primes
            scale_bits: log2 of the nominal scale

        Returns:
            CKKSParams with profile CUSTOM.
        """
        if multiplicative_depth < 0:
            raise ValueError(
                f"multiplicative_depth must be non-negative, got {multiplicative_depth}"
            )
        bits = (SPECIAL_PRIME_BITS,) + (scale_bits,) * multiplicative_depth + (SPECIAL_PRIME_BITS,)
        return cls(
            poly_modulus_degree=2 * num_slots,
            coeff_modulus_bits=bits,
            scale_bits=scale_bits,
            profile=CKKSProfile.CUSTOM,
        )

    @property
    def total_modulus_bits(self) -> int:
        return sum(self.coeff_modulus_bits)

    def prime_bits(self, level: int) -> int:
        """Bit size of the prime dropped when rescaling at `level`."""
        if level < 0 or level > self.max_level:
            raise ValueError(f"level {level} outside chain [0, {self.max_level}]")
        return self.coeff_modulus_bits[level]

    def last_prime(self, level: int) -> float:
        """Value of the prime dropped when rescaling at `level`."""
        return 2.0 ** self.prime_bits(level)

    def fresh_scale(self, level: int) -> float:
        """
        Scale of a ciphertext encrypted directly at `level`.

        Walks down from the top of the chain with scale = scale^2 / q_i so
        that the result matches a top-level encryption that was multiplied
        by 1 and rescaled down to `level`.
        """
        if level < 0 or level > self.max_level:
            raise ValueError(f"level {level} outside chain [0, {self.max_level}]")
        scale = self.scale
        for i in range(self.max_level, level, -1):
            scale = (scale * scale) / self.last_prime(i)
        return scale

    def validate(self, enforce_security: bool = True) -> None:
        """
        Validate CKKS parameters for correctness and (optionally) security.

        Args:
            enforce_security: Check the ring against the security table

        Raises:
            ValueError: If parameters are invalid or insecure.
        """
        if not is_pow2(self.poly_modulus_degree):
            raise ValueError(
                f"poly_modulus_degree={self.poly_modulus_degree} must be power of 2"
            )

        if len(self.coeff_modulus_bits) < 2:
            raise ValueError("Need at least 2 primes in coefficient modulus")

        if self.scale_bits < 1 or self.scale_bits > 60:
            raise ValueError(
                f"scale_bits={self.scale_bits} out of valid range [1, 60]"
            )

        # Ensure scale fits in intermediate primes
        for i, bits in enumerate(self.coeff_modulus_bits[1:-1], start=1):
            if bits < self.scale_bits:
                raise ValueError(
                    f"Intermediate prime {i} ({bits} bits) smaller than "
                    f"scale ({self.scale_bits} bits) - rescale will fail"
                )

        if not enforce_security:
            return

        if self.poly_modulus_degree < MIN_SECURE_POLY_DEGREE:
            raise ValueError(
                f"poly_modulus_degree={self.poly_modulus_degree} too small, "
                f"minimum {MIN_SECURE_POLY_DEGREE} for security"
            )

        max_allowed = poly_degree_to_max_mod_bits(self.poly_modulus_degree)
        if self.total_modulus_bits > max_allowed:
            raise ValueError(
                f"Total coeff modulus bits ({self.total_modulus_bits}) exceeds "
                f"security bound ({max_allowed}) for N={self.poly_modulus_degree}"
            )

    def to_dict(self) -> dict:
        """Serialize to dictionary."""
        return {
            'poly_modulus_degree': self.poly_modulus_degree,
            'coeff_modulus_bits': list(self.coeff_modulus_bits),
            'scale_bits': self.scale_bits,
            'profile': self.profile.value,
            'max_level': self.max_level,
            'slot_count': self.slot_count,
        }

    @classmethod
    def from_dict(cls, d: dict) -> 'CKKSParams':
        """Deserialize from dictionary."""
        return cls(
            poly_modulus_degree=d['poly_modulus_degree'],
            coeff_modulus_bits=tuple(d['coeff_modulus_bits']),
            scale_bits=d['scale_bits'],
            profile=CKKSProfile(d.get('profile', CKKSProfile.CUSTOM.value)),
        )


# =============================================================================
# PROFILE DEFINITIONS
# =============================================================================

def get_fast_profile() -> CKKSParams:
    """
    FAST profile: small chain, quick evaluation.

    - poly_modulus_degree = 16384 (8192 slots)
    - coeff_modulus_bits = [60, 40, 40, 60]
    - scale = 2^40
    - max_level = 2
    """
    return CKKSParams(
        poly_modulus_degree=16384,
        coeff_modulus_bits=(60, 40, 40, 60),
        scale_bits=40,
        profile=CKKSProfile.FAST,
    )


def get_safe_profile() -> CKKSParams:
    """
    SAFE profile: one extra level and a wider scale.

    - poly_modulus_degree = 16384 (8192 slots)
    - coeff_modulus_bits = [60, 45, 45, 45, 60]
    - scale = 2^45
    - max_level = 3
    """
    return CKKSParams(
        poly_modulus_degree=16384,
        coeff_modulus_bits=(60, 45, 45, 45, 60),
        scale_bits=45,
        profile=CKKSProfile.SAFE,
    )


def get_profile(profile: CKKSProfile) -> CKKSParams:
    """Get CKKS parameters for specified profile."""
    if profile == CKKSProfile.FAST:
        return get_fast_profile()
    elif profile == CKKSProfile.SAFE:
        return get_safe_profile()
    else:
        raise ValueError(f"Profile {profile} has no preset; use CKKSParams.for_depth()")

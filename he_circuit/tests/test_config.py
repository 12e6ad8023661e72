"""
Tests for evaluator configuration, CKKS parameters and the error taxonomy.
"""

import pytest

from he_circuit.ckks_params import (
    CKKSParams,
    CKKSProfile,
    get_fast_profile,
    get_profile,
    get_safe_profile,
    poly_degree_to_max_mod_bits,
)
from he_circuit.config import EvaluatorConfig, resolve_config
from he_circuit.errors import (
    CircuitError,
    DimensionError,
    IncompatibleOperands,
    LevelMismatch,
    ScaleMismatch,
)


class TestEvaluatorConfig:
    """Tests for EvaluatorConfig and resolve_config."""

    def test_defaults(self):
        """Defaults describe a 4096-slot, depth-2 circuit at 2^30."""
        config = EvaluatorConfig()
        config.validate()

        assert config.num_slots == 4096
        assert config.multiplicative_depth == 2
        assert config.scale == 2.0 ** 30
        assert config.use_secure_params

    def test_dict_roundtrip(self):
        """to_dict/from_dict preserve every field."""
        config = EvaluatorConfig(num_slots=1024, multiplicative_depth=3, scale_bits=25, seed=7)
        restored = EvaluatorConfig.from_dict(config.to_dict())

        assert restored == config

    def test_from_dict_ignores_unknown_keys(self):
        config = EvaluatorConfig.from_dict({'num_slots': 2048, 'unrelated': True})
        assert config.num_slots == 2048

    def test_resolve_overrides(self):
        """Keyword overrides replace fields of the base config."""
        base = EvaluatorConfig(num_slots=2048)
        resolved = resolve_config(base, scale_bits=40, seed=None)

        assert resolved.num_slots == 2048
        assert resolved.scale_bits == 40
        assert resolved.seed is None

    def test_resolve_rejects_unknown_field(self):
        with pytest.raises(ValueError, match="Unknown configuration fields"):
            resolve_config(scale=40)

    @pytest.mark.parametrize("overrides", [
        {'num_slots': 1000},
        {'multiplicative_depth': -1},
        {'scale_bits': 0},
        {'scale_bits': 61},
        {'max_norm': 0.0},
        {'noise_std': -1.0},
    ])
    def test_invalid_values(self, overrides):
        with pytest.raises(ValueError):
            resolve_config(**overrides)

    @pytest.mark.parametrize("profile,preset", [
        (CKKSProfile.FAST, get_fast_profile),
        (CKKSProfile.SAFE, get_safe_profile),
    ])
    def test_from_profile(self, profile, preset):
        """A profile config rebuilds the preset chain through for_depth."""
        config = EvaluatorConfig.from_profile(profile)
        expected = preset()

        assert config.num_slots == expected.slot_count
        assert config.multiplicative_depth == expected.max_level
        assert config.scale_bits == expected.scale_bits
        params = CKKSParams.for_depth(config.num_slots, config.multiplicative_depth, config.scale_bits)
        assert params.poly_modulus_degree == expected.poly_modulus_degree
        assert params.coeff_modulus_bits == expected.coeff_modulus_bits

    def test_from_profile_overrides(self):
        config = EvaluatorConfig.from_profile(CKKSProfile.SAFE, seed=5)
        assert config.seed == 5
        assert config.scale_bits == 45
        with pytest.raises(ValueError, match="no preset"):
            EvaluatorConfig.from_profile(CKKSProfile.CUSTOM)


class TestCKKSParams:
    """Tests for CKKS parameter construction and validation."""

    def test_for_depth_chain(self):
        """for_depth builds [60, s x depth, 60]."""
        params = CKKSParams.for_depth(4096, 3, 30)

        assert params.poly_modulus_degree == 8192
        assert params.coeff_modulus_bits == (60, 30, 30, 30, 60)
        assert params.max_level == 3
        assert params.slot_count == 4096
        assert params.profile == CKKSProfile.CUSTOM

    def test_last_prime_and_fresh_scale(self):
        """Primes are 2^bits, so a fresh scale is the nominal scale at every level."""
        params = CKKSParams.for_depth(4096, 3, 30)

        assert params.last_prime(3) == 2.0 ** 30
        assert params.last_prime(0) == 2.0 ** 60
        for level in range(params.max_level + 1):
            assert params.fresh_scale(level) == 2.0 ** 30

    def test_security_bound(self):
        """A chain too long for the ring is rejected only when security is enforced."""
        params = CKKSParams.for_depth(4096, 6, 30)
        with pytest.raises(ValueError, match="security bound"):
            params.validate()
        params.validate(enforce_security=False)

    def test_small_ring_requires_insecure_mode(self):
        params = CKKSParams.for_depth(256, 1, 20)
        with pytest.raises(ValueError, match="too small"):
            params.validate()
        params.validate(enforce_security=False)

    def test_scale_larger_than_prime(self):
        params = CKKSParams(poly_modulus_degree=8192, coeff_modulus_bits=(60, 30, 60), scale_bits=40)
        with pytest.raises(ValueError, match="rescale will fail"):
            params.validate()

    def test_profiles(self):
        assert get_profile(CKKSProfile.FAST) == get_fast_profile()
        assert get_profile(CKKSProfile.SAFE) == get_safe_profile()
        get_fast_profile().validate()
        get_safe_profile().validate()
        with pytest.raises(ValueError):
            get_profile(CKKSProfile.CUSTOM)

    def test_dict_roundtrip(self):
        params = get_safe_profile()
        assert CKKSParams.from_dict(params.to_dict()) == params

    def test_max_mod_bits_table(self):
        assert poly_degree_to_max_mod_bits(8192) == 218
        with pytest.raises(ValueError):
            poly_degree_to_max_mod_bits(3000)


class TestErrors:
    """Tests for the error taxonomy."""

    def test_hierarchy(self):
        assert issubclass(ScaleMismatch, IncompatibleOperands)
        assert issubclass(DimensionError, CircuitError)
        assert issubclass(DimensionError, ValueError)

    def test_structured_attributes(self):
        error = LevelMismatch("add", 3, 2)

        assert error.lhs_level == 3
        assert error.rhs_level == 2
        assert "3 != 2" in str(error)
        assert error.to_dict()['error'] == 'LevelMismatch'

    def test_scale_mismatch_message(self):
        error = ScaleMismatch("multiply", 30.0, 60.0)
        assert "same scale" in error.message
        assert error.lhs_log_scale == 30.0

"""
Tests for encrypted linear algebra.

Products are checked against numpy under the plaintext evaluator (exact up
to floating-point summation order) and under the homomorphic evaluator
(within MAX_NORM). The analysis evaluators are checked for exact operation
and rotation counts.
"""

import threading

import numpy as np
import pytest

from he_circuit.common import MAX_NORM, diff2_norm
from he_circuit.config import EvaluatorConfig, ExecutionPolicy
from he_circuit.errors import (
    DimensionError,
    IncompatibleOperands,
    LevelMismatch,
    PreconditionError,
)
from he_circuit.evaluator import (
    DebugEvaluator,
    EncodingKind,
    HomomorphicEvaluator,
    ImplicitDepthFinder,
    OpCount,
    PlaintextEvaluator,
    RotationSet,
)
from he_circuit.linalg import (
    EncodingUnit,
    EncryptedColVector,
    EncryptedMatrix,
    EncryptedRowVector,
    LinearAlgebra,
    TileExecutor,
)
from he_circuit.linalg.encrypted import _EncryptedTiles

NUM_SLOTS = 4096


@pytest.fixture
def config():
    return EvaluatorConfig(num_slots=NUM_SLOTS, multiplicative_depth=3, scale_bits=30, seed=99)


@pytest.fixture
def rng():
    return np.random.default_rng(2024)


@pytest.fixture
def plain_linalg(config):
    return LinearAlgebra(PlaintextEvaluator(config))


@pytest.fixture
def he_linalg(config):
    return LinearAlgebra(HomomorphicEvaluator(config))


def assert_close(expected, actual, tol=MAX_NORM):
    expected = np.asarray(expected)
    assert actual.shape == expected.shape, f"shape {actual.shape} != {expected.shape}"
    norm = diff2_norm(expected.reshape(-1), actual.reshape(-1))
    assert norm < tol, f"relative error {norm} exceeds {tol}"


class TestEncryption:
    """Tests for encrypting, decrypting and tagging tiled objects."""

    def test_make_unit(self, plain_linalg):
        assert plain_linalg.make_unit(64) == EncodingUnit(64, 64)
        assert plain_linalg.make_unit(16) == EncodingUnit(16, 256)
        with pytest.raises(DimensionError):
            plain_linalg.make_unit(3)

    def test_matrix_roundtrip(self, plain_linalg, rng):
        unit = plain_linalg.make_unit(16)
        mat = rng.uniform(-1, 1, (40, 300))
        enc = plain_linalg.encrypt_matrix(mat, unit)

        assert enc.num_vertical_units == 3
        assert enc.num_horizontal_units == 2
        assert enc.num_units == 6
        np.testing.assert_array_equal(plain_linalg.decrypt(enc, suppress_warnings=True), mat)

    def test_vector_roundtrips(self, plain_linalg, rng):
        unit = plain_linalg.make_unit(16)
        vec = rng.uniform(-1, 1, 300)

        row = plain_linalg.encrypt_row_vector(vec, unit)
        col = plain_linalg.encrypt_col_vector(vec, unit)

        assert row.num_units == 19   # ceil(300 / 16)
        assert col.num_units == 2    # ceil(300 / 256)
        np.testing.assert_array_equal(plain_linalg.decrypt(row, suppress_warnings=True), vec)
        np.testing.assert_array_equal(plain_linalg.decrypt(col, suppress_warnings=True), vec)

    def test_homomorphic_roundtrip(self, he_linalg, rng):
        unit = he_linalg.make_unit(64)
        mat = rng.uniform(-1, 1, (70, 65))
        enc = he_linalg.encrypt_matrix(mat, unit)

        assert enc.he_level == 3
        assert_close(mat, he_linalg.decrypt(enc, suppress_warnings=True))

    def test_tiles_are_tagged(self, plain_linalg):
        unit = plain_linalg.make_unit(64)
        mat = plain_linalg.encrypt_matrix(np.ones((64, 64)), unit)
        row = plain_linalg.encrypt_row_vector(np.ones(64), unit)
        col = plain_linalg.encrypt_col_vector(np.ones(64), unit)

        assert mat.cts[0][0].shape == (EncodingKind.MATRIX, 64, 64, 64, 64)
        assert row.cts[0].shape == (EncodingKind.ROW_VECTOR, 1, 64, 64, 64)
        assert col.cts[0].shape == (EncodingKind.COL_VECTOR, 64, 1, 64, 64)

    def test_unit_must_fill_slots(self, plain_linalg):
        with pytest.raises(DimensionError):
            plain_linalg.encrypt_matrix(np.ones((4, 4)), EncodingUnit(4, 4))

    def test_container_validation(self, config):
        evaluator = PlaintextEvaluator(config)
        unit = EncodingUnit(64, 64)
        top = evaluator.encrypt(np.zeros(NUM_SLOTS))
        low = evaluator.encrypt(np.zeros(NUM_SLOTS), level=1)

        with pytest.raises(DimensionError):
            EncryptedMatrix(0, 64, unit, [[top]])
        with pytest.raises(DimensionError):
            EncryptedMatrix(65, 64, unit, [[top]])
        with pytest.raises(DimensionError):
            EncryptedMatrix(128, 128, unit, [[top, top], [top]])
        with pytest.raises(DimensionError):
            EncryptedMatrix(128, 64, unit, [[top], [low]])
        with pytest.raises(DimensionError):
            EncryptedRowVector(65, unit, [top])
        with pytest.raises(DimensionError):
            EncryptedColVector(64, unit, [top, top])

    def test_tile_base_is_abstract(self):
        with pytest.raises(TypeError):
            _EncryptedTiles()

    def test_copy_is_deep(self, plain_linalg):
        unit = plain_linalg.make_unit(64)
        enc = plain_linalg.encrypt_matrix(np.ones((64, 64)), unit)
        clone = enc.copy()
        plain_linalg.negate_inplace(clone)

        np.testing.assert_array_equal(plain_linalg.decrypt(enc, suppress_warnings=True), np.ones((64, 64)))


class TestElementwise:
    """Tests for element-wise operations on tiled objects."""

    @pytest.fixture
    def unit(self, plain_linalg):
        return plain_linalg.make_unit(16)

    def test_add_sub_negate(self, plain_linalg, unit, rng):
        a = rng.uniform(-1, 1, (20, 260))
        b = rng.uniform(-1, 1, (20, 260))
        enc_a = plain_linalg.encrypt_matrix(a, unit)
        enc_b = plain_linalg.encrypt_matrix(b, unit)

        np.testing.assert_allclose(plain_linalg.decrypt(plain_linalg.add(enc_a, enc_b), True), a + b)
        np.testing.assert_allclose(plain_linalg.decrypt(plain_linalg.sub(enc_a, enc_b), True), a - b)
        np.testing.assert_allclose(plain_linalg.decrypt(plain_linalg.negate(enc_a), True), -a)

        plain_linalg.add_inplace(enc_a, enc_b)
        np.testing.assert_allclose(plain_linalg.decrypt(enc_a, True), a + b)

    def test_add_many(self, plain_linalg, unit, rng):
        vecs = [rng.uniform(-1, 1, 30) for _ in range(3)]
        encs = [plain_linalg.encrypt_col_vector(v, unit) for v in vecs]

        total = plain_linalg.add_many(encs)
        np.testing.assert_allclose(plain_linalg.decrypt(total, True), sum(vecs))
        with pytest.raises(PreconditionError):
            plain_linalg.add_many([])

    def test_incompatible_operands(self, plain_linalg, unit):
        mat = plain_linalg.encrypt_matrix(np.ones((16, 16)), unit)
        wider = plain_linalg.encrypt_matrix(np.ones((16, 17)), unit)
        row = plain_linalg.encrypt_row_vector(np.ones(16), unit)
        col = plain_linalg.encrypt_col_vector(np.ones(16), unit)

        with pytest.raises(IncompatibleOperands):
            plain_linalg.add(mat, wider)
        with pytest.raises(IncompatibleOperands):
            plain_linalg.add(row, col)

    def test_add_plain(self, plain_linalg, unit, rng):
        a = rng.uniform(-1, 1, (20, 30))
        b = rng.uniform(-1, 1, (20, 30))
        enc = plain_linalg.encrypt_matrix(a, unit)

        np.testing.assert_allclose(plain_linalg.decrypt(plain_linalg.add_plain(enc, b), True), a + b)
        np.testing.assert_allclose(plain_linalg.decrypt(plain_linalg.add_plain(enc, 2.5), True), a + 2.5)

        vec = rng.uniform(-1, 1, 30)
        enc_vec = plain_linalg.encrypt_row_vector(vec, unit)
        plain_linalg.add_plain_inplace(enc_vec, vec)
        np.testing.assert_allclose(plain_linalg.decrypt(enc_vec, True), 2 * vec)

        with pytest.raises(IncompatibleOperands):
            plain_linalg.add_plain(enc, np.ones((20, 31)))

    def test_multiply_plain(self, plain_linalg, unit, rng):
        a = rng.uniform(-1, 1, (20, 30))
        enc = plain_linalg.multiply_plain(plain_linalg.encrypt_matrix(a, unit), 3.0)

        assert enc.needs_rescale
        enc = plain_linalg.rescale_to_next(enc)
        assert enc.he_level == 2
        np.testing.assert_allclose(plain_linalg.decrypt(enc, True), 3.0 * a)

        with pytest.raises(IncompatibleOperands):
            plain_linalg.multiply_plain(enc, np.ones(4))

    def test_hadamard(self, he_linalg, rng):
        unit = he_linalg.make_unit(16)
        a = rng.uniform(-1, 1, (20, 30))
        b = rng.uniform(-1, 1, (20, 30))
        enc_a = he_linalg.encrypt_matrix(a, unit)
        enc_b = he_linalg.encrypt_matrix(b, unit)

        prod = he_linalg.hadamard_multiply(enc_a, enc_b)
        assert prod.needs_relin and prod.needs_rescale
        prod = he_linalg.rescale_to_next(he_linalg.relinearize(prod))
        assert_close(a * b, he_linalg.decrypt(prod, suppress_warnings=True))

        sq = he_linalg.hadamard_square(enc_a)
        he_linalg.relinearize_inplace(sq)
        he_linalg.rescale_to_next_inplace(sq)
        assert_close(a * a, he_linalg.decrypt(sq, suppress_warnings=True))

    def test_reduce_level(self, plain_linalg, unit):
        high = plain_linalg.encrypt_matrix(np.ones((16, 16)), unit)
        low = plain_linalg.encrypt_matrix(np.ones((16, 16)), unit, level=1)

        reduced = plain_linalg.reduce_level_to(high, low)
        assert reduced.he_level == 1
        assert high.he_level == 3

        a, b = plain_linalg.reduce_level_to_min(low, high)
        assert a.he_level == b.he_level == 1

        plain_linalg.reduce_level_to_inplace(high, 0)
        assert high.he_level == 0


class TestSummation:
    """Tests for sum_rows / sum_cols and their concatenating variants."""

    def test_sum_rows_all_ones(self, he_linalg):
        """sum_rows of a 64x64 all-ones matrix gives 64 values of 64."""
        unit = he_linalg.make_unit(64)
        enc = he_linalg.encrypt_matrix(np.ones((64, 64)), unit)

        result = he_linalg.sum_rows(enc)

        assert isinstance(result, EncryptedColVector)
        assert result.he_level == enc.he_level, "sum_rows consumes no levels"
        decoded = he_linalg.decrypt(result, suppress_warnings=True)
        assert decoded.shape == (64,)
        np.testing.assert_allclose(decoded, 64.0, rtol=1e-4)

    def test_sum_rows_multi_tile(self, plain_linalg, rng):
        unit = plain_linalg.make_unit(16)
        mat = rng.uniform(-1, 1, (40, 300))
        result = plain_linalg.sum_rows(plain_linalg.encrypt_matrix(mat, unit))

        np.testing.assert_allclose(plain_linalg.decrypt(result, True), mat.sum(axis=0))

    def test_sum_cols(self, plain_linalg, rng):
        unit = plain_linalg.make_unit(16)
        mat = rng.uniform(-1, 1, (40, 300))
        result = plain_linalg.sum_cols(plain_linalg.encrypt_matrix(mat, unit), 0.5)

        assert isinstance(result, EncryptedRowVector)
        assert result.needs_rescale
        result = plain_linalg.rescale_to_next(result)
        np.testing.assert_allclose(plain_linalg.decrypt(result, True), 0.5 * mat.sum(axis=1))

    def test_sum_cols_requires_nominal_scale(self, plain_linalg):
        unit = plain_linalg.make_unit(64)
        enc = plain_linalg.multiply_plain(plain_linalg.encrypt_matrix(np.ones((8, 8)), unit), 2.0)

        with pytest.raises(PreconditionError):
            plain_linalg.sum_cols(enc)

    def test_sum_rows_requires_linear(self, plain_linalg):
        unit = plain_linalg.make_unit(64)
        enc = plain_linalg.encrypt_matrix(np.ones((8, 8)), unit)

        with pytest.raises(PreconditionError):
            plain_linalg.sum_rows(plain_linalg.hadamard_square(enc))

    def test_sum_rows_many(self, plain_linalg, rng):
        unit = plain_linalg.make_unit(16)
        mats = [rng.uniform(-1, 1, (16, 40)) for _ in range(3)]
        result = plain_linalg.sum_rows_many([plain_linalg.encrypt_matrix(m, unit) for m in mats])

        np.testing.assert_allclose(plain_linalg.decrypt(result, True), np.vstack(mats).sum(axis=0))

    def test_sum_cols_many(self, plain_linalg, rng):
        unit = plain_linalg.make_unit(16)
        mats = [rng.uniform(-1, 1, (20, 256)) for _ in range(2)]
        result = plain_linalg.sum_cols_many([plain_linalg.encrypt_matrix(m, unit) for m in mats], 2.0)
        result = plain_linalg.rescale_to_next(result)

        np.testing.assert_allclose(plain_linalg.decrypt(result, True), 2.0 * np.hstack(mats).sum(axis=1))

    def test_many_variants_check_arguments(self, plain_linalg):
        unit = plain_linalg.make_unit(16)
        a = plain_linalg.encrypt_matrix(np.ones((16, 16)), unit)
        b = plain_linalg.encrypt_matrix(np.ones((32, 32)), unit)

        with pytest.raises(IncompatibleOperands):
            plain_linalg.sum_rows_many([a, b])
        with pytest.raises(IncompatibleOperands):
            plain_linalg.sum_cols_many([a, b])
        with pytest.raises(PreconditionError):
            plain_linalg.sum_rows_many([])


class TestProducts:
    """Tests for matrix-vector and matrix-matrix products."""

    @pytest.fixture
    def unit(self, plain_linalg):
        return plain_linalg.make_unit(16)

    def test_row_vector_times_matrix(self, plain_linalg, unit, rng):
        mat = rng.uniform(-1, 1, (40, 300))
        vec = rng.uniform(-1, 1, 40)
        enc_mat = plain_linalg.encrypt_matrix(mat, unit)
        enc_vec = plain_linalg.encrypt_row_vector(vec, unit)

        result = plain_linalg.multiply(enc_vec, enc_mat)

        assert isinstance(result, EncryptedColVector)
        assert result.he_level == 3
        assert result.needs_rescale
        result = plain_linalg.rescale_to_next(result)
        np.testing.assert_allclose(plain_linalg.decrypt(result, True), vec @ mat)

    def test_matrix_times_col_vector(self, plain_linalg, unit, rng):
        mat = rng.uniform(-1, 1, (40, 300))
        vec = rng.uniform(-1, 1, 300)
        enc_mat = plain_linalg.encrypt_matrix(mat, unit)
        enc_vec = plain_linalg.encrypt_col_vector(vec, unit)

        result = plain_linalg.multiply(enc_mat, enc_vec, 2.0)

        assert isinstance(result, EncryptedRowVector)
        assert result.he_level == 2
        result = plain_linalg.rescale_to_next(result)
        np.testing.assert_allclose(plain_linalg.decrypt(result, True), 2.0 * (mat @ vec))

    def test_extract_row(self, plain_linalg, unit, rng):
        a = rng.uniform(-1, 1, (300, 20))
        enc_a_trans = plain_linalg.encrypt_matrix(a.T, unit)

        row = plain_linalg.extract_row(enc_a_trans, 270)

        assert isinstance(row, EncryptedRowVector)
        assert row.he_level == 2, "extract_row consumes one level"
        np.testing.assert_array_equal(plain_linalg.decrypt(row, True), a[270])
        with pytest.raises(DimensionError):
            plain_linalg.extract_row(enc_a_trans, 300)

    def test_matrix_times_matrix(self, plain_linalg, unit, rng):
        a = rng.uniform(-1, 1, (18, 20))
        b = rng.uniform(-1, 1, (20, 10))
        enc_a_trans = plain_linalg.encrypt_matrix(a.T, unit)
        enc_b = plain_linalg.encrypt_matrix(b, unit, level=2)

        result = plain_linalg.multiply(enc_a_trans, enc_b, 1.5)

        assert isinstance(result, EncryptedMatrix)
        assert (result.height, result.width) == (18, 10)
        assert result.he_level == 1
        result = plain_linalg.rescale_to_next(result)
        np.testing.assert_allclose(plain_linalg.decrypt(result, True), 1.5 * (a @ b))

    def test_multiply_unit_transpose(self, plain_linalg, rng):
        unit = plain_linalg.make_unit(128)   # 128 x 32
        a = rng.uniform(-1, 1, (8, 20))
        b = rng.uniform(-1, 1, (20, 6))
        enc_a_trans = plain_linalg.encrypt_matrix(a.T, unit)
        enc_b = plain_linalg.encrypt_matrix(b, unit, level=2)

        result = plain_linalg.multiply_unit_transpose(enc_a_trans, enc_b, 2.0)

        assert result.unit == unit.transpose()
        assert result.num_units == 1
        result = plain_linalg.rescale_to_next(result)
        np.testing.assert_allclose(plain_linalg.decrypt(result, True), 2.0 * (a @ b))

    def test_unit_transpose_size_limits(self, plain_linalg, rng):
        unit = plain_linalg.make_unit(128)
        enc_a_trans = plain_linalg.encrypt_matrix(rng.uniform(-1, 1, (20, 40)), unit)
        enc_b = plain_linalg.encrypt_matrix(rng.uniform(-1, 1, (20, 6)), unit, level=2)

        with pytest.raises(DimensionError):
            plain_linalg.multiply_unit_transpose(enc_a_trans, enc_b)

    def test_matrix_product_level_rule(self, plain_linalg, unit):
        enc_a_trans = plain_linalg.encrypt_matrix(np.ones((16, 16)), unit)
        enc_b = plain_linalg.encrypt_matrix(np.ones((16, 16)), unit)

        with pytest.raises(LevelMismatch):
            plain_linalg.multiply(enc_a_trans, enc_b)

    def test_dimension_mismatch(self, plain_linalg, unit):
        enc_mat = plain_linalg.encrypt_matrix(np.ones((16, 32)), unit)
        enc_vec = plain_linalg.encrypt_col_vector(np.ones(16), unit)

        with pytest.raises(IncompatibleOperands):
            plain_linalg.multiply(enc_mat, enc_vec)

    def test_product_requires_same_level(self, plain_linalg, unit):
        enc_mat = plain_linalg.encrypt_matrix(np.ones((16, 16)), unit)
        enc_vec = plain_linalg.encrypt_col_vector(np.ones(16), unit, level=2)

        with pytest.raises(LevelMismatch):
            plain_linalg.multiply(enc_mat, enc_vec)

    def test_homomorphic_products(self, he_linalg, rng):
        """Encrypted products agree with numpy within MAX_NORM."""
        unit = he_linalg.make_unit(64)
        a = rng.uniform(-1, 1, (48, 70))
        b = rng.uniform(-1, 1, (70, 30))
        v = rng.uniform(-1, 1, 70)

        mat_vec = he_linalg.multiply(he_linalg.encrypt_matrix(a, unit), he_linalg.encrypt_col_vector(v, unit))
        mat_vec = he_linalg.rescale_to_next(mat_vec)
        assert_close(a @ v, he_linalg.decrypt(mat_vec, suppress_warnings=True))

        # A = a.T, so A^T is a itself
        mat_mat = he_linalg.multiply(
            he_linalg.encrypt_matrix(a, unit),
            he_linalg.encrypt_matrix(a, unit, level=2),
        )
        mat_mat = he_linalg.rescale_to_next(mat_mat)
        assert mat_mat.he_level == 0
        assert_close(a.T @ a, he_linalg.decrypt(mat_mat))

        vec_mat = he_linalg.multiply(he_linalg.encrypt_row_vector(v, unit), he_linalg.encrypt_matrix(b, unit))
        vec_mat = he_linalg.rescale_to_next(vec_mat)
        assert_close(v @ b, he_linalg.decrypt(vec_mat, suppress_warnings=True))

    def test_debug_cross_checks_products(self, config, rng):
        linalg = LinearAlgebra(DebugEvaluator(config))
        unit = linalg.make_unit(64)
        a = rng.uniform(-1, 1, (30, 50))
        v = rng.uniform(-1, 1, 50)

        result = linalg.multiply(linalg.encrypt_matrix(a, unit), linalg.encrypt_col_vector(v, unit))
        result = linalg.rescale_to_next(result)
        assert_close(a @ v, linalg.decrypt(result, suppress_warnings=True))


class TestCircuitAnalysis:
    """Tests for running linear algebra under the analysis evaluators."""

    def test_sum_rows_op_count(self):
        counter = OpCount(num_slots=NUM_SLOTS)
        linalg = LinearAlgebra(counter)
        unit = linalg.make_unit(64)
        linalg.sum_rows(linalg.encrypt_matrix(np.ones((64, 64)), unit))

        counts = counter.get_op_counts()
        assert counts.encryptions == 1
        assert counts.rotations == 6
        assert counts.additions == 6
        assert counts.multiplies == 0

    def test_sum_cols_op_count(self):
        counter = OpCount(num_slots=NUM_SLOTS)
        linalg = LinearAlgebra(counter)
        unit = linalg.make_unit(64)
        linalg.sum_cols(linalg.encrypt_matrix(np.ones((64, 64)), unit))

        counts = counter.get_op_counts()
        assert counts.rotations == 12
        assert counts.additions == 12
        assert counts.multiplies == 1

    def test_parallel_counts_match_sequential(self):
        """Per-thread counters merge to the same totals as a sequential run."""
        totals = []
        for policy in (ExecutionPolicy.SEQUENTIAL, ExecutionPolicy.PARALLEL):
            counter = OpCount(num_slots=NUM_SLOTS)
            linalg = LinearAlgebra(counter, policy=policy, max_workers=4)
            unit = linalg.make_unit(16)
            linalg.sum_rows(linalg.encrypt_matrix(np.ones((64, 512)), unit))
            totals.append(counter.get_op_counts().to_dict())

        assert totals[0] == totals[1]
        assert totals[0]['encryptions'] == 8
        assert totals[0]['rotations'] == 8    # 2 unit columns x log2(16)
        assert totals[0]['additions'] == 14   # 2 x (3 tile sums + 4 rotation sums)

    def test_parallel_accumulators_stay_bounded(self):
        """Repeated parallel runs reuse workers instead of piling up per-thread accumulators."""
        counter = OpCount(num_slots=NUM_SLOTS)
        rotations = RotationSet(num_slots=NUM_SLOTS)
        for evaluator in (counter, rotations):
            linalg = LinearAlgebra(evaluator, policy=ExecutionPolicy.PARALLEL, max_workers=4)
            unit = linalg.make_unit(16)
            enc = linalg.encrypt_matrix(np.ones((64, 512)), unit)
            for _ in range(50):
                linalg.sum_rows(enc)
            linalg.shutdown()

        # At most the 4 workers plus the calling thread
        assert len(counter._thread_counters) <= 5
        assert len(rotations._thread_rotations) <= 5
        counts = counter.get_op_counts()
        assert counts.rotations == 50 * 8
        assert counts.additions == 50 * 14
        assert rotations.needed_rotations() == [256, 512, 1024, 2048]

    def test_finished_threads_are_folded(self):
        """Counts from threads that have exited are kept after their accumulators are dropped."""
        counter = OpCount(num_slots=NUM_SLOTS)
        unit = LinearAlgebra(counter).make_unit(64)
        for _ in range(3):
            linalg = LinearAlgebra(counter, policy=ExecutionPolicy.PARALLEL, max_workers=2)
            linalg.encrypt_matrix(np.ones((128, 128)), unit)
            linalg.shutdown()

        # Registering the calling thread retires the exited workers
        counter.encrypt(np.zeros(NUM_SLOTS))
        assert len(counter._thread_counters) == 1
        assert counter.get_op_counts().encryptions == 3 * 4 + 1

        counter.reset()
        assert counter.get_op_counts().encryptions == 0

    def test_rotation_sets(self):
        rotations = RotationSet(num_slots=NUM_SLOTS)
        linalg = LinearAlgebra(rotations)
        unit = linalg.make_unit(64)
        enc = linalg.encrypt_matrix(np.ones((64, 64)), unit)

        linalg.sum_rows(enc)
        assert rotations.needed_rotations() == [64, 128, 256, 512, 1024, 2048]

        linalg.sum_cols(enc)
        assert rotations.needed_rotations() == [
            -32, -16, -8, -4, -2, -1, 1, 2, 4, 8, 16, 32, 64, 128, 256, 512, 1024, 2048,
        ]

    def test_matrix_vector_depth(self):
        finder = ImplicitDepthFinder(num_slots=NUM_SLOTS)
        linalg = LinearAlgebra(finder)
        unit = linalg.make_unit(64)
        result = linalg.multiply(
            linalg.encrypt_matrix(np.ones((64, 64)), unit),
            linalg.encrypt_col_vector(np.ones(64), unit),
        )
        linalg.rescale_to_next_inplace(result)

        assert finder.get_multiplicative_depth() == 2

    def test_matrix_matrix_depth(self):
        finder = ImplicitDepthFinder(num_slots=NUM_SLOTS)
        linalg = LinearAlgebra(finder)
        unit = linalg.make_unit(64)
        enc_a_trans = linalg.encrypt_matrix(np.ones((8, 8)), unit)
        enc_b = linalg.reduce_level_to(linalg.encrypt_matrix(np.ones((8, 8)), unit), -1)

        result = linalg.multiply(enc_a_trans, enc_b)
        linalg.rescale_to_next_inplace(result)

        assert finder.get_multiplicative_depth() == 3

    def test_default_policy_follows_evaluator(self, config):
        assert LinearAlgebra(OpCount(config)).policy == ExecutionPolicy.SEQUENTIAL
        assert LinearAlgebra(HomomorphicEvaluator(config)).policy == ExecutionPolicy.PARALLEL


class TestTileExecutor:
    """Tests for ordered, run-to-completion task dispatch."""

    @pytest.mark.parametrize("policy", [ExecutionPolicy.SEQUENTIAL, ExecutionPolicy.PARALLEL])
    def test_results_in_task_order(self, policy):
        executor = TileExecutor(policy, max_workers=4)
        assert executor.map(lambda x: x * x, range(20)) == [x * x for x in range(20)]

    def test_parallel_batch_runs_to_completion(self):
        """Every task runs, then the first failure in task order is raised."""
        completed = []
        lock = threading.Lock()

        def task(i):
            if i in (2, 5):
                raise ValueError(f"task {i} failed")
            with lock:
                completed.append(i)
            return i

        executor = TileExecutor(ExecutionPolicy.PARALLEL, max_workers=3)
        with pytest.raises(ValueError, match="task 2 failed"):
            executor.map(task, range(10))
        assert sorted(completed) == [0, 1, 3, 4, 6, 7, 8, 9]

    def test_invalid_max_workers(self):
        with pytest.raises(ValueError):
            TileExecutor(ExecutionPolicy.PARALLEL, max_workers=0)

    def test_pool_is_reused(self):
        executor = TileExecutor(ExecutionPolicy.PARALLEL, max_workers=2)
        names = set()
        for _ in range(10):
            names.update(executor.map(lambda _: threading.current_thread().name, range(8)))
        executor.shutdown()

        assert len(names) <= 2
        assert all(name.startswith("he-tile") for name in names)
        # A shut-down executor starts a fresh pool on demand
        assert executor.map(lambda x: x + 1, range(3)) == [1, 2, 3]
        executor.shutdown()

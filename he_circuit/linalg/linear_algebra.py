"""
Encrypted Linear Algebra

Matrix and vector arithmetic over tiled CKKS ciphertexts, written once
against the CKKSEvaluator vocabulary. Driven by a HomomorphicEvaluator it
computes on encrypted data; driven by a DepthFinder, OpCount, RotationSet
or ScaleEstimator it analyzes the same circuit.

The summation kernels follow Algorithms 2 and 3 of Halevi, Han, Chen and
Paillier (HHCP'18): a power-of-two row or column of a tile is summed with
log2(n) rotate-and-add steps.

Result level of the products, for inputs at level L (every result needs
a rescale afterwards):
  - multiply(row vector, matrix): L
  - multiply(matrix, col vector): L-1
  - multiply(A^T, B) with A^T at L+1 and B at L: L-1

Usage:
    evaluator = HomomorphicEvaluator(num_slots=4096, multiplicative_depth=3)
    linalg = LinearAlgebra(evaluator)
    unit = linalg.make_unit(64)

    enc_mat = linalg.encrypt_matrix(mat, unit)
    enc_vec = linalg.encrypt_col_vector(vec, unit)
    result = linalg.multiply(enc_mat, enc_vec)
    linalg.rescale_to_next_inplace(result)
    linalg.decrypt(result)  # ~= mat @ vec
"""

from typing import Callable, List, Optional, Sequence, Tuple, Union
import logging
import math

import numpy as np

from ..common import ArrayLike, decryption_warning
from ..config import ExecutionPolicy
from ..errors import (
    DimensionError,
    IncompatibleOperands,
    LevelMismatch,
    PreconditionError,
    ScaleMismatch,
)
from ..evaluator.base import CKKSEvaluator
from ..evaluator.ciphertext import CiphertextHandle, EncodingKind
from .encoding import (
    EncodingUnit,
    decode_col_vector,
    decode_matrix,
    decode_row_vector,
    encode_col_vector,
    encode_matrix,
    encode_row_vector,
    num_tiles,
)
from .encrypted import EncryptedColVector, EncryptedMatrix, EncryptedRowVector
from .execution import TileExecutor

logger = logging.getLogger(__name__)

EncryptedObject = Union[EncryptedMatrix, EncryptedRowVector, EncryptedColVector]
LinalgLevelTarget = Union[int, EncryptedMatrix, EncryptedRowVector, EncryptedColVector]

_ENCRYPTED_TYPES = (EncryptedMatrix, EncryptedRowVector, EncryptedColVector)


class LinearAlgebra:
    """
    Tiled matrix/vector operations on top of a CKKS evaluator.

    Independent tiles (or result rows) are dispatched through a
    TileExecutor; evaluators that model real computation default to a
    thread pool, analysis-only evaluators to sequential execution.
    """

    def __init__(
        self,
        evaluator: CKKSEvaluator,
        policy: Optional[ExecutionPolicy] = None,
        max_workers: Optional[int] = None,
    ):
        """
        Args:
            evaluator: Interpreter that executes every ciphertext operation
            policy: Tile dispatch policy (default: evaluator.default_execution_policy)
            max_workers: Thread pool size for the PARALLEL policy
        """
        self.evaluator = evaluator
        if policy is None:
            policy = evaluator.default_execution_policy
        self._executor = TileExecutor(policy, max_workers)
        # Work nested inside a parallel task stays on that task's thread
        self._sequential = TileExecutor(ExecutionPolicy.SEQUENTIAL)

    @property
    def policy(self) -> ExecutionPolicy:
        return self._executor.policy

    def shutdown(self) -> None:
        """Release the tile thread pool."""
        self._executor.shutdown()

    @property
    def num_slots(self) -> int:
        return self.evaluator.num_slots

    def make_unit(self, height: int) -> EncodingUnit:
        """Encoding unit of the given height that fills every slot."""
        if height <= 0 or self.num_slots % height != 0:
            raise DimensionError(
                f"Unit height {height} does not divide the slot count {self.num_slots}"
            )
        return EncodingUnit(height, self.num_slots // height)

    # =========================================================================
    # ENCRYPTION / DECRYPTION
    # =========================================================================

    def encrypt_matrix(
        self,
        mat: ArrayLike,
        unit: EncodingUnit,
        level: Optional[int] = None,
    ) -> EncryptedMatrix:
        """
        Encrypt a matrix tile by tile.

        Args:
            mat: 2-D array
            unit: Encoding unit (must fill the evaluator's slots)
            level: Encryption level (evaluator default if None)
        """
        self._check_unit(unit)
        tiles = encode_matrix(mat, unit)
        height, width = np.asarray(mat, dtype=np.float64).shape
        cts = self._executor.map(
            lambda row: [
                self._encrypt_tile(tile, level, EncodingKind.MATRIX, unit.height, unit.width, unit)
                for tile in row
            ],
            tiles,
        )
        return EncryptedMatrix(height, width, unit, cts)

    def encrypt_row_vector(
        self,
        vec: ArrayLike,
        unit: EncodingUnit,
        level: Optional[int] = None,
    ) -> EncryptedRowVector:
        """Encrypt a row vector; see linalg.encoding for the layout."""
        self._check_unit(unit)
        tiles = encode_row_vector(vec, unit)
        cts = self._executor.map(
            lambda tile: self._encrypt_tile(tile, level, EncodingKind.ROW_VECTOR, 1, unit.height, unit),
            tiles,
        )
        return EncryptedRowVector(len(vec), unit, cts)

    def encrypt_col_vector(
        self,
        vec: ArrayLike,
        unit: EncodingUnit,
        level: Optional[int] = None,
    ) -> EncryptedColVector:
        """Encrypt a column vector; see linalg.encoding for the layout."""
        self._check_unit(unit)
        tiles = encode_col_vector(vec, unit)
        cts = self._executor.map(
            lambda tile: self._encrypt_tile(tile, level, EncodingKind.COL_VECTOR, unit.width, 1, unit),
            tiles,
        )
        return EncryptedColVector(len(vec), unit, cts)

    def _encrypt_tile(
        self,
        tile: np.ndarray,
        level: Optional[int],
        encoding: EncodingKind,
        height: int,
        width: int,
        unit: EncodingUnit,
    ) -> CiphertextHandle:
        ct = self.evaluator.encrypt(tile.reshape(-1), level)
        ct.set_shape(encoding, height, width, unit.height, unit.width)
        return ct

    def decrypt(self, obj: EncryptedObject, suppress_warnings: bool = False) -> np.ndarray:
        """
        Decrypt and decode, trimmed to the logical shape.

        Logs a warning when the object is above level 0 unless
        `suppress_warnings` is set.
        """
        if not suppress_warnings:
            decryption_warning(obj.he_level)
        unit = obj.unit

        def decode_tile(ct: CiphertextHandle) -> np.ndarray:
            return self.evaluator.decrypt(ct, suppress_warnings=True).reshape(unit.height, unit.width)

        if isinstance(obj, EncryptedMatrix):
            tiles = [[decode_tile(ct) for ct in row] for row in obj.cts]
            return decode_matrix(tiles, obj.height, obj.width)
        if isinstance(obj, EncryptedRowVector):
            return decode_row_vector([decode_tile(ct) for ct in obj.cts], obj.width)
        return decode_col_vector([decode_tile(ct) for ct in obj.cts], obj.height)

    # =========================================================================
    # ELEMENT-WISE OPERATIONS
    # =========================================================================

    def add(self, a: EncryptedObject, b: EncryptedObject) -> EncryptedObject:
        self._check_same_layout("add", a, b)
        return self._zip_tiles(self.evaluator.add, a, b)

    def add_inplace(self, a: EncryptedObject, b: EncryptedObject) -> None:
        self._check_same_layout("add", a, b)
        self._executor.map(
            lambda pair: self.evaluator.add_inplace(*pair),
            zip(_tiles(a), _tiles(b)),
        )

    def add_many(self, objs: Sequence[EncryptedObject]) -> EncryptedObject:
        """
        Sum a non-empty list of objects of the same type and layout.

        Raises:
            PreconditionError: If the list is empty
        """
        if len(objs) == 0:
            raise PreconditionError("add_many", "input list must be non-empty")
        result = objs[0].copy()
        for obj in objs[1:]:
            self.add_inplace(result, obj)
        return result

    def sub(self, a: EncryptedObject, b: EncryptedObject) -> EncryptedObject:
        self._check_same_layout("sub", a, b)
        return self._zip_tiles(self.evaluator.sub, a, b)

    def sub_inplace(self, a: EncryptedObject, b: EncryptedObject) -> None:
        self._check_same_layout("sub", a, b)
        self._executor.map(
            lambda pair: self.evaluator.sub_inplace(*pair),
            zip(_tiles(a), _tiles(b)),
        )

    def negate(self, obj: EncryptedObject) -> EncryptedObject:
        return self._map_tiles(self.evaluator.negate, obj)

    def negate_inplace(self, obj: EncryptedObject) -> None:
        self._executor.map(self.evaluator.negate_inplace, _tiles(obj))

    def add_plain(
        self,
        obj: EncryptedObject,
        plain: Union[float, int, ArrayLike],
    ) -> EncryptedObject:
        """
        Add a scalar, or a plain matrix/vector of the same type and size.
        """
        if np.isscalar(plain):
            return self._map_tiles(lambda ct: self.evaluator.add_plain(ct, plain), obj)
        plain_tiles = self._encode_like("add_plain", obj, plain)
        return _with_tiles(obj, self._executor.map(
            lambda pair: self.evaluator.add_plain(pair[0], pair[1]),
            zip(_tiles(obj), plain_tiles),
        ))

    def add_plain_inplace(
        self,
        obj: EncryptedObject,
        plain: Union[float, int, ArrayLike],
    ) -> None:
        if np.isscalar(plain):
            self._executor.map(lambda ct: self.evaluator.add_plain_inplace(ct, plain), _tiles(obj))
            return
        plain_tiles = self._encode_like("add_plain", obj, plain)
        self._executor.map(
            lambda pair: self.evaluator.add_plain_inplace(pair[0], pair[1]),
            zip(_tiles(obj), plain_tiles),
        )

    def multiply_plain(self, obj: EncryptedObject, scalar: float) -> EncryptedObject:
        """Multiply every element by a scalar (result needs a rescale)."""
        self._check_scalar("multiply_plain", obj, scalar)
        return self._map_tiles(lambda ct: self.evaluator.multiply_plain(ct, scalar), obj)

    def multiply_plain_inplace(self, obj: EncryptedObject, scalar: float) -> None:
        self._check_scalar("multiply_plain", obj, scalar)
        self._executor.map(lambda ct: self.evaluator.multiply_plain_inplace(ct, scalar), _tiles(obj))

    def hadamard_multiply(self, a, b) -> EncryptedObject:
        """
        Element-wise product.

        Supported argument pairs:
          - two objects of the same type and layout
          - (row vector, matrix): scales matrix row i by v[i]
          - (matrix, col vector): scales matrix column j by v[j]

        The result needs relinearization and a rescale.
        """
        if isinstance(a, EncryptedRowVector) and isinstance(b, EncryptedMatrix):
            return self._hadamard_row_matrix(a, b, self._executor)
        if isinstance(a, EncryptedMatrix) and isinstance(b, EncryptedColVector):
            return self._hadamard_matrix_col(a, b, self._executor)
        self._check_same_layout("hadamard_multiply", a, b)
        return self._zip_tiles(self.evaluator.multiply, a, b)

    def hadamard_multiply_inplace(self, a: EncryptedObject, b: EncryptedObject) -> None:
        self._check_same_layout("hadamard_multiply", a, b)
        self._executor.map(
            lambda pair: self.evaluator.multiply_inplace(*pair),
            zip(_tiles(a), _tiles(b)),
        )

    def hadamard_square(self, obj: EncryptedObject) -> EncryptedObject:
        return self._map_tiles(self.evaluator.square, obj)

    def hadamard_square_inplace(self, obj: EncryptedObject) -> None:
        self._executor.map(self.evaluator.square_inplace, _tiles(obj))

    # =========================================================================
    # LEVEL AND DEGREE MANAGEMENT
    # =========================================================================

    def relinearize(self, obj: EncryptedObject) -> EncryptedObject:
        return self._map_tiles(self.evaluator.relinearize, obj)

    def relinearize_inplace(self, obj: EncryptedObject) -> None:
        self._executor.map(self.evaluator.relinearize_inplace, _tiles(obj))

    def rescale_to_next(self, obj: EncryptedObject) -> EncryptedObject:
        return self._map_tiles(self.evaluator.rescale_to_next, obj)

    def rescale_to_next_inplace(self, obj: EncryptedObject) -> None:
        self._executor.map(self.evaluator.rescale_to_next_inplace, _tiles(obj))

    def reduce_level_to(self, obj: EncryptedObject, target: LinalgLevelTarget) -> EncryptedObject:
        result = obj.copy()
        self.reduce_level_to_inplace(result, target)
        return result

    def reduce_level_to_inplace(self, obj: EncryptedObject, target: LinalgLevelTarget) -> None:
        """Lower every tile to a level, or to another object's level."""
        level = target.he_level if isinstance(target, _ENCRYPTED_TYPES) else int(target)
        self._executor.map(lambda ct: self.evaluator.reduce_level_to_inplace(ct, level), _tiles(obj))

    def reduce_level_to_min(
        self,
        a: EncryptedObject,
        b: EncryptedObject,
    ) -> Tuple[EncryptedObject, EncryptedObject]:
        a, b = a.copy(), b.copy()
        self.reduce_level_to_min_inplace(a, b)
        return a, b

    def reduce_level_to_min_inplace(self, a: EncryptedObject, b: EncryptedObject) -> None:
        """Lower whichever argument is higher to the other's level."""
        if a.he_level > b.he_level:
            self.reduce_level_to_inplace(a, b.he_level)
        elif b.he_level > a.he_level:
            self.reduce_level_to_inplace(b, a.he_level)

    # =========================================================================
    # SUMMATION
    # =========================================================================

    def rot(self, ct: CiphertextHandle, max_steps: int, stride: int, rotate_left: bool) -> CiphertextHandle:
        """
        Rotate-and-add over powers of two below `max_steps`.

        To sum the columns of a tile use (width, 1, left); to sum rows use
        (height, width, left); to replicate column 0 across a row use
        (width, 1, right). `max_steps` must be a power of two.
        """
        i = 1
        while i < max_steps:
            if rotate_left:
                rotated = self.evaluator.rotate_left(ct, i * stride)
            else:
                rotated = self.evaluator.rotate_right(ct, i * stride)
            ct = self.evaluator.add(ct, rotated)
            i <<= 1
        return ct

    def sum_rows(self, mat: EncryptedMatrix) -> EncryptedColVector:
        """
        Sum the rows of a matrix.

        The result is the row of column sums, returned as an encrypted
        column vector so it can feed a matrix-vector product directly.
        Consumes no levels.

        Raises:
            PreconditionError: If the input is not linear
        """
        return self._sum_rows(mat, self._executor)

    def sum_cols(self, mat: EncryptedMatrix, scalar: float = 1.0) -> EncryptedRowVector:
        """
        Sum the columns of a matrix, scaled by `scalar`.

        The result is the column of row sums, returned as an encrypted row
        vector. It needs a rescale, so this costs one level.

        Raises:
            PreconditionError: If the input is not linear or not at nominal scale
        """
        return self._sum_cols(mat, scalar, self._executor)

    def sum_rows_many(self, mats: Sequence[EncryptedMatrix]) -> EncryptedColVector:
        """sum_rows over the vertical concatenation of `mats`."""
        if len(mats) == 0:
            raise PreconditionError("sum_rows_many", "input list must be non-empty")
        first = mats[0]
        for mat in mats[1:]:
            if mat.unit != first.unit:
                raise IncompatibleOperands(
                    "sum_rows_many", repr(first), repr(mat), reason="arguments must have the same encoding unit",
                )
            if mat.width != first.width:
                raise IncompatibleOperands(
                    "sum_rows_many", repr(first), repr(mat), reason="arguments must have the same width",
                )
        rows = [row for mat in mats for row in mat.cts]
        stacked = EncryptedMatrix(len(rows) * first.unit.height, first.width, first.unit, rows)
        return self.sum_rows(stacked)

    def sum_cols_many(self, mats: Sequence[EncryptedMatrix], scalar: float = 1.0) -> EncryptedRowVector:
        """sum_cols over the horizontal concatenation of `mats`."""
        if len(mats) == 0:
            raise PreconditionError("sum_cols_many", "input list must be non-empty")
        first = mats[0]
        for mat in mats[1:]:
            if mat.unit != first.unit:
                raise IncompatibleOperands(
                    "sum_cols_many", repr(first), repr(mat), reason="arguments must have the same encoding unit",
                )
            if mat.height != first.height:
                raise IncompatibleOperands(
                    "sum_cols_many", repr(first), repr(mat), reason="arguments must have the same height",
                )
        rows = [
            [ct for mat in mats for ct in mat.cts[i]]
            for i in range(first.num_vertical_units)
        ]
        stacked = EncryptedMatrix(first.height, len(rows[0]) * first.unit.width, first.unit, rows)
        return self.sum_cols(stacked, scalar)

    def _sum_rows(self, mat: EncryptedMatrix, executor: TileExecutor) -> EncryptedColVector:
        if mat.needs_relin:
            raise PreconditionError("sum_rows", "input must be a linear ciphertext")
        unit = mat.unit

        def unit_column(j: int) -> CiphertextHandle:
            ct = self.evaluator.add_many([mat.cts[i][j] for i in range(mat.num_vertical_units)])
            ct = self.rot(ct, unit.height, unit.width, True)
            ct.set_shape(EncodingKind.COL_VECTOR, unit.width, 1, unit.height, unit.width)
            return ct

        cts = executor.map(unit_column, range(mat.num_horizontal_units))
        return EncryptedColVector(mat.width, unit, cts)

    def _sum_cols(self, mat: EncryptedMatrix, scalar: float, executor: TileExecutor) -> EncryptedRowVector:
        if mat.needs_relin:
            raise PreconditionError("sum_cols", "input must be a linear ciphertext")
        if mat.needs_rescale:
            raise PreconditionError("sum_cols", "input must have nominal scale")
        unit = mat.unit
        # `scalar` in column 0 of every row of the unit
        column_mask = np.zeros(unit.num_slots)
        column_mask[::unit.width] = scalar

        def unit_row(i: int) -> CiphertextHandle:
            ct = self.evaluator.add_many(mat.cts[i])
            ct = self.rot(ct, unit.width, 1, True)
            ct = self.evaluator.multiply_plain(ct, column_mask)
            ct = self.rot(ct, unit.width, 1, False)
            ct.set_shape(EncodingKind.ROW_VECTOR, 1, unit.height, unit.height, unit.width)
            return ct

        cts = executor.map(unit_row, range(mat.num_vertical_units))
        return EncryptedRowVector(mat.height, unit, cts)

    # =========================================================================
    # MATRIX-VECTOR PRODUCTS
    # =========================================================================

    def multiply(self, a, b, scalar: float = 1.0):
        """
        Encrypted product, dispatched on argument types.

          - multiply(row vector v, matrix A) -> column vector v*A
          - multiply(matrix A, col vector v, c) -> row vector c*A*v
          - multiply(matrix A^T, matrix B, c) -> matrix c*A*B

        Every result needs a rescale. See multiply_unit_transpose for a
        cheaper matrix product when the result fits in one tile.
        """
        if isinstance(a, EncryptedRowVector) and isinstance(b, EncryptedMatrix):
            if scalar != 1.0:
                raise PreconditionError(
                    "multiply", "a scalar is not supported for row vector-matrix products",
                )
            return self._multiply_row_matrix(a, b, self._executor)
        if isinstance(a, EncryptedMatrix) and isinstance(b, EncryptedColVector):
            return self._multiply_matrix_col(a, b, scalar)
        if isinstance(a, EncryptedMatrix) and isinstance(b, EncryptedMatrix):
            return self._multiply_matrices(a, b, scalar)
        raise IncompatibleOperands("multiply", repr(a), repr(b), reason="unsupported argument types")

    def _multiply_row_matrix(
        self,
        vec: EncryptedRowVector,
        mat: EncryptedMatrix,
        executor: TileExecutor,
    ) -> EncryptedColVector:
        self._check_product_inputs("multiply", vec, mat)
        products = self._hadamard_row_matrix(vec, mat, executor)
        executor.map(self.evaluator.relinearize_inplace, _tiles(products))
        return self._sum_rows(products, executor)

    def _multiply_matrix_col(
        self,
        mat: EncryptedMatrix,
        vec: EncryptedColVector,
        scalar: float,
    ) -> EncryptedRowVector:
        self._check_product_inputs("multiply", mat, vec)
        products = self._hadamard_matrix_col(mat, vec, self._executor)
        self.relinearize_inplace(products)
        self.rescale_to_next_inplace(products)
        return self._sum_cols(products, scalar, self._executor)

    def _hadamard_row_matrix(
        self,
        vec: EncryptedRowVector,
        mat: EncryptedMatrix,
        executor: TileExecutor,
    ) -> EncryptedMatrix:
        if mat.height != vec.width or mat.unit != vec.unit:
            raise IncompatibleOperands(
                "hadamard_multiply", repr(vec), repr(mat),
                reason="matrix height must equal vector width, with the same unit",
            )

        def unit_column(j: int) -> List[CiphertextHandle]:
            return [
                self.evaluator.multiply(mat.cts[i][j], vec.cts[i])
                for i in range(mat.num_vertical_units)
            ]

        columns = executor.map(unit_column, range(mat.num_horizontal_units))
        cts = [
            [columns[j][i] for j in range(mat.num_horizontal_units)]
            for i in range(mat.num_vertical_units)
        ]
        return EncryptedMatrix(mat.height, mat.width, mat.unit, cts)

    def _hadamard_matrix_col(
        self,
        mat: EncryptedMatrix,
        vec: EncryptedColVector,
        executor: TileExecutor,
    ) -> EncryptedMatrix:
        if mat.width != vec.height or mat.unit != vec.unit:
            raise IncompatibleOperands(
                "hadamard_multiply", repr(mat), repr(vec),
                reason="matrix width must equal vector height, with the same unit",
            )

        def unit_row(i: int) -> List[CiphertextHandle]:
            return [
                self.evaluator.multiply(mat.cts[i][j], vec.cts[j])
                for j in range(mat.num_horizontal_units)
            ]

        cts = executor.map(unit_row, range(mat.num_vertical_units))
        return EncryptedMatrix(mat.height, mat.width, mat.unit, cts)

    # =========================================================================
    # MATRIX-MATRIX PRODUCTS
    # =========================================================================

    def extract_row(self, mat_a_trans: EncryptedMatrix, row: int) -> EncryptedRowVector:
        """
        Extract row `row` of A from an encryption of A^T.

        Masks out column `row` of A^T, shifts it to column 0 and replicates
        it across every column, giving the row-vector encoding of A's row.
        Consumes one level.
        """
        return self._extract_row(mat_a_trans, row, self._executor)

    def _extract_row(self, mat_a_trans: EncryptedMatrix, row: int, executor: TileExecutor) -> EncryptedRowVector:
        if not 0 <= row < mat_a_trans.width:
            raise DimensionError(
                f"extract_row: row {row} out of range for a matrix with {mat_a_trans.width} rows"
            )
        unit = mat_a_trans.unit
        unit_col, col_in_unit = divmod(row, unit.width)
        col_mask = np.zeros(unit.num_slots)
        col_mask[col_in_unit::unit.width] = 1.0

        def isolate(i: int) -> CiphertextHandle:
            ct = self.evaluator.multiply_plain(mat_a_trans.cts[i][unit_col], col_mask)
            self.evaluator.rescale_to_next_inplace(ct)
            if col_in_unit != 0:
                self.evaluator.rotate_left_inplace(ct, col_in_unit)
            ct = self.rot(ct, unit.width, 1, False)
            ct.set_shape(EncodingKind.ROW_VECTOR, 1, unit.height, unit.height, unit.width)
            return ct

        cts = executor.map(isolate, range(mat_a_trans.num_vertical_units))
        return EncryptedRowVector(mat_a_trans.height, unit, cts)

    def _multiply_matrices(
        self,
        mat_a_trans: EncryptedMatrix,
        mat_b: EncryptedMatrix,
        scalar: float,
    ) -> EncryptedMatrix:
        self._check_matrix_product("multiply", mat_a_trans, mat_b)
        unit = mat_a_trans.unit
        logger.debug(f"multiply: {mat_a_trans!r} x {mat_b!r}, {mat_a_trans.width} row tasks")
        row_results = self._matrix_product_rows(mat_a_trans, mat_b, scalar, transpose_unit=False)

        # Row k of the result lives in row k % h of unit row k // h
        matrix_cts = []
        for i in range(num_tiles(mat_a_trans.width, unit.height)):
            unit_row = row_results[i * unit.height]
            for j in range(1, unit.height):
                k = i * unit.height + j
                if k >= mat_a_trans.width:
                    break
                self.add_inplace(unit_row, row_results[k])
            for ct in unit_row.cts:
                ct.set_shape(EncodingKind.MATRIX, unit.height, unit.width, unit.height, unit.width)
            matrix_cts.append(unit_row.cts)
        return EncryptedMatrix(mat_a_trans.width, mat_b.width, unit, matrix_cts)

    def multiply_unit_transpose(
        self,
        mat_a_trans: EncryptedMatrix,
        mat_b: EncryptedMatrix,
        scalar: float = 1.0,
    ) -> EncryptedMatrix:
        """
        Compute scalar*A*B into a single tile with the transposed unit.

        For an n x m unit (m <= n), A^T is t x s and B is t x u with
        t <= n and s, u <= m. Each row of the product is masked directly
        into its row of the m x n output tile, so rows are summed into one
        ciphertext without a second round of masking.

        Raises:
            LevelMismatch: If A^T is not exactly one level above B
            DimensionError: If the shapes do not fit one unit
        """
        self._check_matrix_product("multiply_unit_transpose", mat_a_trans, mat_b)
        unit = mat_a_trans.unit
        n, m = unit.height, unit.width
        if m > n:
            raise DimensionError(
                f"multiply_unit_transpose: unit {unit} must be at least as tall as it is wide"
            )
        if mat_b.height > n or mat_a_trans.width > m or mat_b.width > m:
            raise DimensionError(
                f"multiply_unit_transpose: {mat_a_trans!r} and {mat_b!r} do not fit a single "
                f"{unit} unit"
            )

        logger.debug(f"multiply_unit_transpose: {mat_a_trans!r} x {mat_b!r}")
        row_results = self._matrix_product_rows(mat_a_trans, mat_b, scalar, transpose_unit=True)
        ct = self.evaluator.add_many([result.cts[0] for result in row_results])
        out_unit = unit.transpose()
        ct.set_shape(EncodingKind.MATRIX, out_unit.height, out_unit.width, out_unit.height, out_unit.width)
        return EncryptedMatrix(mat_a_trans.width, mat_b.width, out_unit, [[ct]])

    def _matrix_product_rows(
        self,
        mat_a_trans: EncryptedMatrix,
        mat_b: EncryptedMatrix,
        scalar: float,
        transpose_unit: bool,
    ) -> List[EncryptedColVector]:
        return self._executor.map(
            lambda k: self._matrix_product_row(mat_a_trans, mat_b, scalar, k, transpose_unit),
            range(mat_a_trans.width),
        )

    def _matrix_product_row(
        self,
        mat_a_trans: EncryptedMatrix,
        mat_b: EncryptedMatrix,
        scalar: float,
        k: int,
        transpose_unit: bool,
    ) -> EncryptedColVector:
        """Row k of scalar*A*B, masked to its row of the output tile."""
        row_a = self._extract_row(mat_a_trans, k, self._sequential)
        result = self._multiply_row_matrix(row_a, mat_b, self._sequential)
        unit = mat_a_trans.unit

        row_mask = np.zeros(unit.num_slots)
        if transpose_unit:
            # Output tile is (w x h): row k, first B.width columns
            start = k * unit.height
            row_mask[start:start + mat_b.width] = scalar
        else:
            start = (k % unit.height) * unit.width
            row_mask[start:start + unit.width] = scalar

        for ct in result.cts:
            self.evaluator.rescale_to_next_inplace(ct)
            self.evaluator.multiply_plain_inplace(ct, row_mask)
        return result

    # =========================================================================
    # CHECKS AND HELPERS
    # =========================================================================

    def _check_unit(self, unit: EncodingUnit) -> None:
        if unit.num_slots != self.num_slots:
            raise DimensionError(
                f"Encoding unit {unit} has {unit.num_slots} slots, evaluator has {self.num_slots}"
            )

    def _check_same_layout(self, op: str, a: EncryptedObject, b: EncryptedObject) -> None:
        if type(a) is not type(b) or _dims(a) != _dims(b) or a.unit != b.unit:
            raise IncompatibleOperands(op, repr(a), repr(b))

    def _check_scalar(self, op: str, obj: EncryptedObject, scalar) -> None:
        if not np.isscalar(scalar):
            raise IncompatibleOperands(
                op, repr(obj), f"plaintext of shape {np.shape(scalar)}",
                reason="only scalar plaintexts are supported",
            )

    def _check_product_inputs(self, op: str, a: EncryptedObject, b: EncryptedObject) -> None:
        if a.he_level != b.he_level:
            raise LevelMismatch(op, a.he_level, b.he_level)
        if a.scale != b.scale:
            raise ScaleMismatch(op, math.log2(a.scale), math.log2(b.scale))
        if a.needs_rescale or b.needs_rescale:
            raise PreconditionError(op, "arguments must have nominal scale")
        if a.needs_relin or b.needs_relin:
            raise PreconditionError(op, "arguments must be linear ciphertexts")

    def _check_matrix_product(self, op: str, mat_a_trans: EncryptedMatrix, mat_b: EncryptedMatrix) -> None:
        if mat_a_trans.he_level != mat_b.he_level + 1:
            raise LevelMismatch(
                op, mat_a_trans.he_level, mat_b.he_level,
                reason="first argument must be exactly one level above the second",
            )
        if mat_a_trans.height != mat_b.height or mat_a_trans.unit != mat_b.unit:
            raise IncompatibleOperands(
                op, repr(mat_a_trans), repr(mat_b),
                reason="arguments must have the same height and encoding unit",
            )
        if mat_a_trans.needs_rescale or mat_b.needs_rescale:
            raise PreconditionError(op, "arguments must have nominal scale")
        if mat_a_trans.needs_relin or mat_b.needs_relin:
            raise PreconditionError(op, "arguments must be linear ciphertexts")

    def _encode_like(self, op: str, obj: EncryptedObject, plain: ArrayLike) -> List[np.ndarray]:
        """Encode a plain matrix/vector with obj's layout, flattened per tile."""
        arr = np.asarray(plain, dtype=np.float64)
        if arr.shape != _dims(obj):
            raise IncompatibleOperands(
                op, repr(obj), f"plaintext of shape {arr.shape}",
                reason="plaintext must match the encrypted shape",
            )
        if isinstance(obj, EncryptedMatrix):
            tiles = [tile for row in encode_matrix(arr, obj.unit) for tile in row]
        elif isinstance(obj, EncryptedRowVector):
            tiles = encode_row_vector(arr, obj.unit)
        else:
            tiles = encode_col_vector(arr, obj.unit)
        return [tile.reshape(-1) for tile in tiles]

    def _map_tiles(
        self,
        func: Callable[[CiphertextHandle], CiphertextHandle],
        obj: EncryptedObject,
    ) -> EncryptedObject:
        return _with_tiles(obj, self._executor.map(func, _tiles(obj)))

    def _zip_tiles(
        self,
        func: Callable[[CiphertextHandle, CiphertextHandle], CiphertextHandle],
        a: EncryptedObject,
        b: EncryptedObject,
    ) -> EncryptedObject:
        return _with_tiles(a, self._executor.map(lambda pair: func(*pair), zip(_tiles(a), _tiles(b))))


def _dims(obj: EncryptedObject) -> Tuple[int, ...]:
    if isinstance(obj, EncryptedMatrix):
        return (obj.height, obj.width)
    if isinstance(obj, EncryptedRowVector):
        return (obj.width,)
    return (obj.height,)


def _tiles(obj: EncryptedObject) -> List[CiphertextHandle]:
    """Tiles in row-major order."""
    if isinstance(obj, EncryptedMatrix):
        return [ct for row in obj.cts for ct in row]
    return list(obj.cts)


def _with_tiles(obj: EncryptedObject, tiles: List[CiphertextHandle]) -> EncryptedObject:
    """A new object with obj's layout holding `tiles` (row-major)."""
    if isinstance(obj, EncryptedMatrix):
        cols = obj.num_horizontal_units
        grid = [tiles[i:i + cols] for i in range(0, len(tiles), cols)]
        return EncryptedMatrix(obj.height, obj.width, obj.unit, grid)
    if isinstance(obj, EncryptedRowVector):
        return EncryptedRowVector(obj.width, obj.unit, tiles)
    return EncryptedColVector(obj.height, obj.unit, tiles)

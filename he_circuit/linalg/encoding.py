"""
Encoding Units and Tiling

Matrices and vectors larger than one ciphertext are split into tiles of a
fixed power-of-two shape (the encoding unit). Each tile is one plaintext,
laid out row-major across the slots.

Layouts for a unit of height h and width w:

  - Matrix: tile (i, j) holds rows [i*h, (i+1)*h) and columns
    [j*w, (j+1)*w), zero padded past the matrix edge.
  - Row vector v: tile i holds v[i*h + k] in every column of row k.
    The vector is stored transposed so that it lines up with the rows of
    a matrix it multiplies.
  - Column vector v: tile i holds v[i*w + l] in every row of column l.
"""

from dataclasses import dataclass
from typing import List, Sequence

import numpy as np

from ..common import ArrayLike, is_pow2
from ..errors import DimensionError


@dataclass(frozen=True)
class EncodingUnit:
    """
    Power-of-two tile shape.

    Attributes:
        height: Rows per tile
        width: Columns per tile
    """

    height: int
    width: int

    def __post_init__(self):
        if not (is_pow2(self.height) and is_pow2(self.width)):
            raise DimensionError(
                f"Encoding unit dimensions must be positive powers of two, "
                f"got {self.height}x{self.width}"
            )

    @property
    def num_slots(self) -> int:
        return self.height * self.width

    def transpose(self) -> 'EncodingUnit':
        return EncodingUnit(self.width, self.height)

    def __str__(self) -> str:
        return f"{self.height}x{self.width}"


def num_tiles(length: int, unit_dim: int) -> int:
    """Number of tiles of size `unit_dim` needed to cover `length`."""
    return -(-length // unit_dim)


# =============================================================================
# MATRICES
# =============================================================================

def encode_matrix(mat: ArrayLike, unit: EncodingUnit) -> List[List[np.ndarray]]:
    """
    Split a matrix into unit-shaped tiles.

    Args:
        mat: 2-D array or list of equal-length rows
        unit: Tile shape

    Returns:
        Grid of (unit.height, unit.width) arrays, row-major

    Raises:
        DimensionError: If the matrix is empty or ragged
    """
    if len(mat) == 0:
        raise DimensionError("encode_matrix: matrix must be non-empty")
    try:
        row_lengths = {len(row) for row in mat}
    except TypeError:
        raise DimensionError("encode_matrix: expected a 2-D matrix") from None
    if len(row_lengths) != 1:
        raise DimensionError("encode_matrix: matrix rows must all have the same length")
    arr = np.array(mat, dtype=np.float64)
    height, width = arr.shape
    if width == 0:
        raise DimensionError("encode_matrix: matrix must be non-empty")

    tiles = []
    for i in range(num_tiles(height, unit.height)):
        tile_row = []
        for j in range(num_tiles(width, unit.width)):
            tile = np.zeros((unit.height, unit.width))
            block = arr[i * unit.height:(i + 1) * unit.height, j * unit.width:(j + 1) * unit.width]
            tile[:block.shape[0], :block.shape[1]] = block
            tile_row.append(tile)
        tiles.append(tile_row)
    return tiles


def decode_matrix(
    tiles: Sequence[Sequence[ArrayLike]],
    trim_height: int = -1,
    trim_width: int = -1,
) -> np.ndarray:
    """
    Reassemble a matrix from its tiles.

    Args:
        tiles: Grid of 2-D tiles, all of the same shape
        trim_height: Rows to keep (-1 keeps all)
        trim_width: Columns to keep (-1 keeps all)

    Raises:
        DimensionError: If the grid is empty or ragged, or a trim exceeds the data
    """
    if len(tiles) == 0 or len(tiles[0]) == 0:
        raise DimensionError("decode_matrix: tile grid must be non-empty")
    if len({len(row) for row in tiles}) != 1:
        raise DimensionError("decode_matrix: each row of tiles must have the same length")

    arr = np.block([[np.asarray(t, dtype=np.float64) for t in row] for row in tiles])
    if trim_height < 0:
        trim_height = arr.shape[0]
    if trim_width < 0:
        trim_width = arr.shape[1]
    if trim_height > arr.shape[0] or trim_width > arr.shape[1]:
        raise DimensionError(
            f"decode_matrix: cannot trim {arr.shape[0]}x{arr.shape[1]} data "
            f"to {trim_height}x{trim_width}"
        )
    return arr[:trim_height, :trim_width]


# =============================================================================
# VECTORS
# =============================================================================

def _check_vector(op: str, vec: ArrayLike) -> np.ndarray:
    arr = np.asarray(vec, dtype=np.float64)
    if arr.ndim != 1 or arr.size == 0:
        raise DimensionError(f"{op}: expected a non-empty 1-D vector, got shape {arr.shape}")
    return arr


def encode_row_vector(vec: ArrayLike, unit: EncodingUnit) -> List[np.ndarray]:
    """Tile a row vector; tile i holds vec[i*h + k] across row k."""
    arr = _check_vector("encode_row_vector", vec)
    tiles = []
    for i in range(num_tiles(arr.size, unit.height)):
        chunk = np.zeros(unit.height)
        block = arr[i * unit.height:(i + 1) * unit.height]
        chunk[:block.size] = block
        tiles.append(np.repeat(chunk[:, np.newaxis], unit.width, axis=1))
    return tiles


def decode_row_vector(tiles: Sequence[ArrayLike], trim_length: int = -1) -> np.ndarray:
    """Inverse of encode_row_vector; reads column 0 of each tile."""
    if len(tiles) == 0:
        raise DimensionError("decode_row_vector: need at least one tile")
    arr = np.concatenate([np.asarray(t, dtype=np.float64)[:, 0] for t in tiles])
    return _trim("decode_row_vector", arr, trim_length)


def encode_col_vector(vec: ArrayLike, unit: EncodingUnit) -> List[np.ndarray]:
    """Tile a column vector; tile i holds vec[i*w + l] down column l."""
    arr = _check_vector("encode_col_vector", vec)
    tiles = []
    for i in range(num_tiles(arr.size, unit.width)):
        chunk = np.zeros(unit.width)
        block = arr[i * unit.width:(i + 1) * unit.width]
        chunk[:block.size] = block
        tiles.append(np.repeat(chunk[np.newaxis, :], unit.height, axis=0))
    return tiles


def decode_col_vector(tiles: Sequence[ArrayLike], trim_length: int = -1) -> np.ndarray:
    """Inverse of encode_col_vector; reads row 0 of each tile."""
    if len(tiles) == 0:
        raise DimensionError("decode_col_vector: need at least one tile")
    arr = np.concatenate([np.asarray(t, dtype=np.float64)[0, :] for t in tiles])
    return _trim("decode_col_vector", arr, trim_length)


def _trim(op: str, arr: np.ndarray, length: int) -> np.ndarray:
    if length < 0:
        return arr
    if length > arr.size:
        raise DimensionError(f"{op}: cannot trim {arr.size} values to {length}")
    return arr[:length]

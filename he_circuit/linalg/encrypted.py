"""
Encrypted Matrices and Vectors

Containers for tiled ciphertexts. Each object records its logical size and
encoding unit next to the tile handles, and validates on construction that
the tiles form a complete grid at a single level and scale.
"""

from abc import ABC, abstractmethod
from typing import List, Sequence

from ..errors import DimensionError
from ..evaluator.ciphertext import CiphertextHandle
from .encoding import EncodingUnit, num_tiles


class _EncryptedTiles(ABC):
    """Shared accessors over a non-empty list of tiles."""

    @abstractmethod
    def _all_tiles(self) -> List[CiphertextHandle]:
        pass

    def _validate_tiles(self, kind: str) -> None:
        tiles = self._all_tiles()
        first = tiles[0]
        for ct in tiles[1:]:
            if ct.he_level != first.he_level:
                raise DimensionError(f"{kind}: all tiles must be at the same level")
            if ct.scale != first.scale:
                raise DimensionError(f"{kind}: all tiles must have the same scale")

    @property
    def he_level(self) -> int:
        return self._all_tiles()[0].he_level

    @property
    def scale(self) -> float:
        return self._all_tiles()[0].scale

    @property
    def needs_rescale(self) -> bool:
        return self._all_tiles()[0].needs_rescale

    @property
    def needs_relin(self) -> bool:
        return any(ct.needs_relin for ct in self._all_tiles())

    @property
    def num_units(self) -> int:
        return len(self._all_tiles())


class EncryptedMatrix(_EncryptedTiles):
    """
    A matrix encrypted as a grid of tiles.

    cts[i][j] encrypts rows [i*h, (i+1)*h) and columns [j*w, (j+1)*w) of
    the matrix, where (h, w) is the encoding unit.
    """

    def __init__(
        self,
        height: int,
        width: int,
        unit: EncodingUnit,
        cts: Sequence[Sequence[CiphertextHandle]],
    ):
        if height <= 0 or width <= 0:
            raise DimensionError(f"EncryptedMatrix: dimensions must be positive, got {height}x{width}")
        rows = num_tiles(height, unit.height)
        cols = num_tiles(width, unit.width)
        if len(cts) != rows:
            raise DimensionError(
                f"EncryptedMatrix: a {height}x{width} matrix with a {unit} unit needs "
                f"{rows} rows of tiles, got {len(cts)}"
            )
        for row in cts:
            if len(row) != cols:
                raise DimensionError(
                    f"EncryptedMatrix: a {height}x{width} matrix with a {unit} unit needs "
                    f"{cols} tiles per row, got {len(row)}"
                )
        self.height = height
        self.width = width
        self.unit = unit
        self.cts = [list(row) for row in cts]
        self._validate_tiles("EncryptedMatrix")

    def _all_tiles(self) -> List[CiphertextHandle]:
        return [ct for row in self.cts for ct in row]

    @property
    def num_vertical_units(self) -> int:
        return len(self.cts)

    @property
    def num_horizontal_units(self) -> int:
        return len(self.cts[0])

    def copy(self) -> 'EncryptedMatrix':
        return EncryptedMatrix(
            self.height, self.width, self.unit,
            [[ct.copy() for ct in row] for row in self.cts],
        )

    def __repr__(self) -> str:
        return (
            f"EncryptedMatrix({self.height}x{self.width}, unit={self.unit}, "
            f"level={self.he_level})"
        )


class EncryptedRowVector(_EncryptedTiles):
    """
    A row vector encrypted as ceil(width / h) tiles.

    The vector is stored transposed: tile i holds v[i*h + k] in every
    column of row k, so it multiplies the rows of an encrypted matrix
    with the same unit.
    """

    def __init__(self, width: int, unit: EncodingUnit, cts: Sequence[CiphertextHandle]):
        if width <= 0:
            raise DimensionError(f"EncryptedRowVector: width must be positive, got {width}")
        expected = num_tiles(width, unit.height)
        if len(cts) != expected:
            raise DimensionError(
                f"EncryptedRowVector: a length-{width} vector with a {unit} unit needs "
                f"{expected} tiles, got {len(cts)}"
            )
        self.width = width
        self.unit = unit
        self.cts = list(cts)
        self._validate_tiles("EncryptedRowVector")

    def _all_tiles(self) -> List[CiphertextHandle]:
        return self.cts

    @property
    def num_vertical_units(self) -> int:
        return len(self.cts)

    @property
    def num_horizontal_units(self) -> int:
        return 1

    def copy(self) -> 'EncryptedRowVector':
        return EncryptedRowVector(self.width, self.unit, [ct.copy() for ct in self.cts])

    def __repr__(self) -> str:
        return f"EncryptedRowVector({self.width}, unit={self.unit}, level={self.he_level})"


class EncryptedColVector(_EncryptedTiles):
    """
    A column vector encrypted as ceil(height / w) tiles.

    Tile i holds v[i*w + l] in every row of column l.
    """

    def __init__(self, height: int, unit: EncodingUnit, cts: Sequence[CiphertextHandle]):
        if height <= 0:
            raise DimensionError(f"EncryptedColVector: height must be positive, got {height}")
        expected = num_tiles(height, unit.width)
        if len(cts) != expected:
            raise DimensionError(
                f"EncryptedColVector: a length-{height} vector with a {unit} unit needs "
                f"{expected} tiles, got {len(cts)}"
            )
        self.height = height
        self.unit = unit
        self.cts = list(cts)
        self._validate_tiles("EncryptedColVector")

    def _all_tiles(self) -> List[CiphertextHandle]:
        return self.cts

    @property
    def num_vertical_units(self) -> int:
        return 1

    @property
    def num_horizontal_units(self) -> int:
        return len(self.cts)

    def copy(self) -> 'EncryptedColVector':
        return EncryptedColVector(self.height, self.unit, [ct.copy() for ct in self.cts])

    def __repr__(self) -> str:
        return f"EncryptedColVector({self.height}, unit={self.unit}, level={self.he_level})"

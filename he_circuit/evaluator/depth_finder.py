"""
Multiplicative Depth Finders

Two interpreters that only track levels, used to size CKKS parameters
before a circuit is run for real.

ImplicitDepthFinder:
  Every ciphertext is encrypted at level 0 and each rescale moves it one
  level down, so levels go negative. The deepest rescale seen is the
  circuit's multiplicative depth.

ExplicitDepthFinder:
  Ciphertexts are encrypted at caller-chosen levels (for circuits whose
  inputs enter at different depths). The largest encryption level is the
  depth; rescaling a level-0 ciphertext is an error.

Both variants model bootstrapping. A bootstrapped ciphertext restarts at
level 0 on a second, post-bootstrap chain. Combining a bootstrapped and a
fresh ciphertext fixes the offset between the two chains, which is how the
number of levels consumed by bootstrapping is recovered.
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional
import logging

from ..common import ArrayLike
from ..config import EvaluatorConfig
from ..errors import DepthConsistencyError, InvalidLevelTarget, UnsupportedOperation
from .base import CKKSEvaluator
from .ciphertext import CiphertextHandle

logger = logging.getLogger(__name__)


# =============================================================================
# IMPLICIT DEPTH FINDER
# =============================================================================

class ImplicitDepthFinder(CKKSEvaluator):
    """
    Depth finder for circuits whose inputs are all encrypted at the top level.

    Example:
        finder = ImplicitDepthFinder(num_slots=4096)
        ct = finder.encrypt(values)
        ct = finder.rescale_to_next(finder.square(ct))
        finder.get_multiplicative_depth()  # 1
    """

    def __init__(self, config: Optional[EvaluatorConfig] = None, **overrides):
        super().__init__(config, **overrides)
        self._max_contiguous_depth = 0
        self._post_bootstrap_depth = 0
        # -1 until a bootstrapped and a fresh ciphertext are combined
        self._bootstrap_depth = -1
        self._uses_bootstrapping = False

    def encrypt(self, coeffs: ArrayLike, level: Optional[int] = None) -> CiphertextHandle:
        if level is not None:
            raise UnsupportedOperation(
                "ImplicitDepthFinder does not define encrypt() with an explicit level"
            )
        self._slot_vector(coeffs)
        return CiphertextHandle(he_level=0, scale=self.nominal_scale, num_slots=self.num_slots)

    # -------------------------------------------------------------------------
    # HOOKS
    # -------------------------------------------------------------------------

    def on_add(self, ct1: CiphertextHandle, ct2: CiphertextHandle) -> None:
        self._set_bootstrap_depth(ct1, ct2)

    def on_sub(self, ct1: CiphertextHandle, ct2: CiphertextHandle) -> None:
        self._set_bootstrap_depth(ct1, ct2)

    def on_multiply(self, ct1: CiphertextHandle, ct2: CiphertextHandle) -> None:
        self._set_bootstrap_depth(ct1, ct2)

    def on_rescale_to_next(self, ct: CiphertextHandle) -> None:
        # Levels start at 0 and go negative, so 1 - level is the depth reached
        self._record_rescale(ct.bootstrapped, ct.he_level)

    def on_reduce_level_to(self, ct: CiphertextHandle, level: int) -> None:
        for current in range(ct.he_level, level, -1):
            self._record_rescale(ct.bootstrapped, current)

    def on_bootstrap(self, ct: CiphertextHandle, rescale_for_bootstrapping: bool) -> CiphertextHandle:
        with self._lock:
            depth = int(rescale_for_bootstrapping) - ct.he_level
            if ct.bootstrapped:
                self._post_bootstrap_depth = max(self._post_bootstrap_depth, depth)
            else:
                self._max_contiguous_depth = max(self._max_contiguous_depth, depth)
            self._uses_bootstrapping = True
        ct.he_level = 0
        return ct

    def _record_rescale(self, bootstrapped: bool, level: int) -> None:
        with self._lock:
            if bootstrapped:
                self._post_bootstrap_depth = max(self._post_bootstrap_depth, 1 - level)
            else:
                self._max_contiguous_depth = max(self._max_contiguous_depth, 1 - level)

    def _set_bootstrap_depth(self, ct1: CiphertextHandle, ct2: CiphertextHandle) -> None:
        if ct1.bootstrapped == ct2.bootstrapped:
            return
        boot, fresh = (ct1, ct2) if ct1.bootstrapped else (ct2, ct1)
        btp_levels = boot.he_level - fresh.he_level
        with self._lock:
            if self._bootstrap_depth < 0:
                if btp_levels < 0:
                    raise DepthConsistencyError(
                        f"Bootstrapped ciphertext is {-btp_levels} level(s) below a fresh one"
                    )
                self._bootstrap_depth = btp_levels
            elif self._bootstrap_depth != btp_levels:
                raise DepthConsistencyError(
                    f"Bootstrapping depth was previously {self._bootstrap_depth}, "
                    f"but is now {btp_levels}"
                )
        ct1.he_level = boot.he_level

    # -------------------------------------------------------------------------
    # RESULTS
    # -------------------------------------------------------------------------

    @property
    def uses_bootstrapping(self) -> bool:
        with self._lock:
            return self._uses_bootstrapping

    def get_param_bootstrap_depth(self) -> int:
        """
        Levels consumed by bootstrapping (0 if the circuit never bootstraps).

        Raises:
            DepthConsistencyError: If the observed bootstrapping depth is
                below the lower bound implied by the circuit.
        """
        with self._lock:
            lower_bound = self._max_contiguous_depth - self._post_bootstrap_depth
            if 0 <= self._bootstrap_depth < lower_bound:
                raise DepthConsistencyError(
                    f"Observed bootstrapping depth {self._bootstrap_depth} is smaller than "
                    f"the implied depth {lower_bound}"
                )
            if not self._uses_bootstrapping:
                return 0
            return max(self._bootstrap_depth, lower_bound)

    def get_param_eval_depth(self) -> int:
        """Levels available to the circuit outside bootstrapping."""
        btp_depth = self.get_param_bootstrap_depth()
        with self._lock:
            return max(self._max_contiguous_depth - btp_depth, self._post_bootstrap_depth)

    def get_multiplicative_depth(self) -> int:
        """Total multiplicative depth of the circuit."""
        return self.get_param_eval_depth() + self.get_param_bootstrap_depth()


# =============================================================================
# EXPLICIT DEPTH FINDER
# =============================================================================

@dataclass(frozen=True)
class DepthSummary:
    """Result of an ExplicitDepthFinder run."""
    min_bootstrap_depth: int
    min_post_bootstrap_depth: int
    uses_bootstrapping: bool

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to dictionary."""
        return {
            'min_bootstrap_depth': self.min_bootstrap_depth,
            'min_post_bootstrap_depth': self.min_post_bootstrap_depth,
            'uses_bootstrapping': self.uses_bootstrapping,
        }


class ExplicitDepthFinder(CKKSEvaluator):
    """
    Depth finder for circuits with explicit encryption levels.

    Calling encrypt() without a level switches the evaluator to implicit
    mode, where it tracks exactly like ImplicitDepthFinder. A circuit must
    use one mode throughout.
    """

    def __init__(self, config: Optional[EvaluatorConfig] = None, **overrides):
        super().__init__(config, **overrides)
        self._max_contiguous_depth = 0
        self._implicit_post_bootstrap_depth = 0
        # -1 until a bootstrapped and a fresh ciphertext are combined
        self._explicit_post_bootstrap_depth = -1
        self._uses_bootstrapping = False
        self._explicit_levels: Optional[bool] = None
        self._implicit: Optional[ImplicitDepthFinder] = None

    def encrypt(self, coeffs: ArrayLike, level: Optional[int] = None) -> CiphertextHandle:
        self._select_mode(level is not None)
        if self._implicit is not None:
            return self._implicit.encrypt(coeffs)
        if level < 0:
            raise InvalidLevelTarget(
                "encrypt", 0, level,
                reason=f"explicit encryption level must be non-negative, got {level}",
            )
        self._slot_vector(coeffs)
        with self._lock:
            self._max_contiguous_depth = max(self._max_contiguous_depth, level)
        return CiphertextHandle(he_level=level, scale=self.nominal_scale, num_slots=self.num_slots)

    def _select_mode(self, explicit: bool) -> None:
        with self._lock:
            if self._explicit_levels is None:
                self._explicit_levels = explicit
                if not explicit:
                    self._implicit = ImplicitDepthFinder(self.config)
            elif self._explicit_levels != explicit:
                raise UnsupportedOperation(
                    "ExplicitDepthFinder cannot mix encryptions with and without explicit levels"
                )

    # -------------------------------------------------------------------------
    # HOOKS
    # -------------------------------------------------------------------------

    def on_add(self, ct1: CiphertextHandle, ct2: CiphertextHandle) -> None:
        if self._implicit is not None:
            self._implicit.on_add(ct1, ct2)
        else:
            self._set_explicit_post_bootstrap_depth(ct1, ct2)

    def on_sub(self, ct1: CiphertextHandle, ct2: CiphertextHandle) -> None:
        if self._implicit is not None:
            self._implicit.on_sub(ct1, ct2)
        else:
            self._set_explicit_post_bootstrap_depth(ct1, ct2)

    def on_multiply(self, ct1: CiphertextHandle, ct2: CiphertextHandle) -> None:
        if self._implicit is not None:
            self._implicit.on_multiply(ct1, ct2)
        else:
            self._set_explicit_post_bootstrap_depth(ct1, ct2)

    def on_rescale_to_next(self, ct: CiphertextHandle) -> None:
        if self._implicit is not None:
            self._implicit.on_rescale_to_next(ct)
        else:
            self._record_rescale(ct.bootstrapped, ct.he_level)

    def on_reduce_level_to(self, ct: CiphertextHandle, level: int) -> None:
        if self._implicit is not None:
            self._implicit.on_reduce_level_to(ct, level)
            return
        for current in range(ct.he_level, level, -1):
            self._record_rescale(ct.bootstrapped, current)

    def on_bootstrap(self, ct: CiphertextHandle, rescale_for_bootstrapping: bool) -> CiphertextHandle:
        if self._implicit is not None:
            return self._implicit.on_bootstrap(ct, rescale_for_bootstrapping)
        if rescale_for_bootstrapping and ct.he_level == 0:
            raise InvalidLevelTarget(
                "bootstrap", 0, -1,
                reason="cannot rescale a level 0 ciphertext for bootstrapping",
            )
        with self._lock:
            if ct.bootstrapped:
                self._implicit_post_bootstrap_depth = max(
                    self._implicit_post_bootstrap_depth,
                    int(rescale_for_bootstrapping) - ct.he_level,
                )
            self._uses_bootstrapping = True
        ct.he_level = 0
        return ct

    def _record_rescale(self, bootstrapped: bool, level: int) -> None:
        if not bootstrapped and level == 0:
            raise InvalidLevelTarget(
                "rescale_to_next", 0, -1, reason="cannot rescale a level 0 ciphertext"
            )
        # Bootstrapped ciphertexts restart at 0 and go negative
        if bootstrapped:
            with self._lock:
                self._implicit_post_bootstrap_depth = max(
                    self._implicit_post_bootstrap_depth, 1 - level
                )

    def _set_explicit_post_bootstrap_depth(self, ct1: CiphertextHandle, ct2: CiphertextHandle) -> None:
        if ct1.bootstrapped == ct2.bootstrapped:
            return
        boot, fresh = (ct1, ct2) if ct1.bootstrapped else (ct2, ct1)
        # Fresh levels count down from the encryption level, bootstrapped
        # levels count down from 0: the difference is the absolute level of
        # a freshly bootstrapped ciphertext
        bootstrap_level = fresh.he_level - boot.he_level
        with self._lock:
            if self._explicit_post_bootstrap_depth < 0:
                if bootstrap_level < 0:
                    raise DepthConsistencyError(
                        f"Fresh ciphertext is {-bootstrap_level} level(s) below a bootstrapped one"
                    )
                self._explicit_post_bootstrap_depth = bootstrap_level
            elif self._explicit_post_bootstrap_depth != bootstrap_level:
                raise DepthConsistencyError(
                    f"Post-bootstrapping depth was previously {self._explicit_post_bootstrap_depth}, "
                    f"but is now {bootstrap_level}"
                )
        ct1.he_level = boot.he_level

    # -------------------------------------------------------------------------
    # RESULTS
    # -------------------------------------------------------------------------

    def get_param_eval_depth(self) -> int:
        """
        Levels available after bootstrapping (or the whole chain without it).

        Raises:
            DepthConsistencyError: If the circuit rescales a bootstrapped
                ciphertext more often than the observed chain allows.
        """
        if self._implicit is not None:
            return self._implicit.get_param_eval_depth()
        with self._lock:
            explicit = self._explicit_post_bootstrap_depth
            implicit = self._implicit_post_bootstrap_depth
            if explicit >= 0 and implicit > explicit:
                raise DepthConsistencyError(
                    f"Explicit post-bootstrapping depth {explicit} is smaller than "
                    f"the implied depth {implicit}"
                )
            if self._uses_bootstrapping:
                return max(implicit, explicit)
            return self._max_contiguous_depth

    def get_param_bootstrap_depth(self) -> int:
        """Levels consumed by bootstrapping."""
        if self._implicit is not None:
            return self._implicit.get_param_bootstrap_depth()
        eval_depth = self.get_param_eval_depth()
        with self._lock:
            return self._max_contiguous_depth - eval_depth

    def get_multiplicative_depth(self) -> int:
        """Total multiplicative depth of the circuit."""
        return self.get_param_eval_depth() + self.get_param_bootstrap_depth()

    def get_depth_summary(self) -> DepthSummary:
        """Bootstrapping depth, post-bootstrapping depth and whether bootstrapping is used."""
        if self._implicit is not None:
            uses = self._implicit.uses_bootstrapping
        else:
            with self._lock:
                uses = self._uses_bootstrapping
        return DepthSummary(
            min_bootstrap_depth=self.get_param_bootstrap_depth(),
            min_post_bootstrap_depth=self.get_param_eval_depth(),
            uses_bootstrapping=uses,
        )

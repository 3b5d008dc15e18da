"""
Reference Number Generator

Produces human-readable loan references of the form JN + YY + MM + a
4-digit sequence that restarts every month, e.g. JN26010001. Uniqueness is
enforced by the repository; a collision moves on to the next number.
"""

from datetime import date, datetime, timezone
from typing import Callable, Optional
import logging
import re

from .config import MicrofinanceConfig, get_config
from .repository import LedgerRepository
from .errors import ReferenceCollisionError, StorageUnavailableError


logger = logging.getLogger(__name__)

MAX_SEQUENCE = 9999


class ReferenceGenerator:
    """
    Monthly sequential reference numbers backed by the repository
    """

    def __init__(
        self,
        repository: LedgerRepository,
        config: Optional[MicrofinanceConfig] = None,
        clock: Optional[Callable[[], date]] = None
    ):
        self.repository = repository
        self.config = config or get_config()
        self.clock = clock or date.today
        prefix = re.escape(self.config.reference_prefix)
        self._sequential = re.compile(rf"^{prefix}\d{{2}}(0[1-9]|1[0-2])\d{{4}}$")
        self._degraded = re.compile(rf"^{prefix}\d{{2}}(0[1-9]|1[0-2])-T\d+$")

    def month_prefix(self, today: Optional[date] = None) -> str:
        """'JN' + YY + MM for the given day"""
        today = today or self.clock()
        return f"{self.config.reference_prefix}{today.strftime('%y%m')}"

    def generate_reference(self) -> str:
        """
        Reserve and return the next reference for the current month

        Returns:
            Sequential reference, or a timestamp-based degraded reference when
            the repository is unavailable

        Raises:
            ReferenceCollisionError: Retries exhausted or the month's
                sequence is used up
        """
        prefix = self.month_prefix()
        try:
            return self._reserve_next(prefix)
        except StorageUnavailableError as e:
            reference = self._degraded_reference(prefix)
            logger.warning(
                "Reference storage unavailable (%s); issued degraded reference %s",
                e, reference
            )
            return reference

    def is_valid_reference(self, reference: str) -> bool:
        """True for the sequential format only"""
        return bool(reference) and self._sequential.match(reference.strip().upper()) is not None

    def is_degraded_reference(self, reference: str) -> bool:
        return bool(reference) and self._degraded.match(reference.strip().upper()) is not None

    def _reserve_next(self, prefix: str) -> str:
        attempts = 0
        sequence = self._next_sequence(prefix)
        while True:
            if sequence > MAX_SEQUENCE:
                raise ReferenceCollisionError(
                    f"{prefix}{sequence}",
                    f"Reference sequence for {prefix} exhausted at {MAX_SEQUENCE}"
                )
            reference = f"{prefix}{sequence:04d}"
            try:
                self.repository.reserve_reference(reference)
                logger.debug("Reserved reference %s", reference)
                return reference
            except ReferenceCollisionError:
                attempts += 1
                if attempts >= self.config.reference_max_retries:
                    logger.error("Reference generation gave up after %d collisions at %s",
                                 attempts, reference)
                    raise
                logger.info("Reference %s already taken, retrying", reference)
                sequence = max(sequence + 1, self._next_sequence(prefix))

    def _next_sequence(self, prefix: str) -> int:
        highest = self.repository.highest_reference_for_prefix(prefix)
        if not highest:
            return 1
        return int(highest[-4:]) + 1

    @staticmethod
    def _degraded_reference(prefix: str) -> str:
        stamp = datetime.now(timezone.utc).strftime("%d%H%M%S%f")
        return f"{prefix}-T{stamp}"

"""Memory guard for long chains of stored ensembles.

After the first chain iteration the size of one stored sample is
extrapolated to the full chain length. If the projection exceeds an
absolute threshold and a fraction of the memory the platform reports as
available, storage switches to compressed ensembles. This is a best-effort
heuristic; it does not guarantee that a chain fits in memory.
"""

from typing import Optional
import os
import warnings

from ..errors import MemoryPressureWarning


# Defaults, overridable through MemoryGuardConfig
DEFAULT_ABSOLUTE_THRESHOLD = 5e7
DEFAULT_MEMORY_FRACTION = 1.0 / 20.0
DEFAULT_FALLBACK_MEMORY = 4e9


def available_memory(fallback: float = DEFAULT_FALLBACK_MEMORY) -> float:
    """Bytes of physical memory currently available, or ``fallback``.

    Uses ``os.sysconf`` where the platform provides it.
    """
    try:
        pages = os.sysconf("SC_AVPHYS_PAGES")
        page_size = os.sysconf("SC_PAGE_SIZE")
    except (AttributeError, ValueError, OSError):
        return fallback
    if pages <= 0 or page_size <= 0:
        return fallback
    return float(pages * page_size)


class MemoryGuard:
    """Decides whether a chain should switch to compressed storage.

    Example:
        >>> guard = MemoryGuard(absolute_threshold=5e7)
        >>> if guard.check(sample.nbytes(), n_iter):
        ...     sample = sample.compressed(n_steps)
    """

    def __init__(
        self,
        absolute_threshold: float = DEFAULT_ABSOLUTE_THRESHOLD,
        memory_fraction: float = DEFAULT_MEMORY_FRACTION,
        fallback_memory: float = DEFAULT_FALLBACK_MEMORY,
        available: Optional[float] = None,
        enabled: bool = True,
    ):
        """Initialize the memory guard.

        Args:
            absolute_threshold: Projected bytes below which nothing happens
            memory_fraction: Fraction of available memory the chain may use
            fallback_memory: Assumed available bytes when it cannot be queried
            available: Fixed available-memory figure, skips the OS query
            enabled: If False, never triggers
        """
        if not 0.0 < memory_fraction <= 1.0:
            raise ValueError(f"memory_fraction must be in (0, 1], got {memory_fraction}")
        self.absolute_threshold = absolute_threshold
        self.memory_fraction = memory_fraction
        self.fallback_memory = fallback_memory
        self.available = available
        self.enabled = enabled

    def available_bytes(self) -> float:
        if self.available is not None:
            return self.available
        return available_memory(self.fallback_memory)

    def should_compress(self, sample_bytes: int, n_iter: int) -> bool:
        """True if storing n_iter samples of this size threatens memory."""
        if not self.enabled:
            return False
        projected = float(sample_bytes) * n_iter
        if projected <= self.absolute_threshold:
            return False
        return projected > self.available_bytes() * self.memory_fraction

    def check(self, sample_bytes: int, n_iter: int) -> bool:
        """Like should_compress, but warns with MemoryPressureWarning on trigger."""
        if not self.should_compress(sample_bytes, n_iter):
            return False
        warnings.warn(
            f"Projected chain storage of {float(sample_bytes) * n_iter:.3g} bytes "
            f"risks exhausting memory, switching to compressed samples",
            MemoryPressureWarning,
            stacklevel=2,
        )
        return True

    def __repr__(self) -> str:
        return (
            f"MemoryGuard(absolute_threshold={self.absolute_threshold:g}, "
            f"memory_fraction={self.memory_fraction:g}, enabled={self.enabled})"
        )

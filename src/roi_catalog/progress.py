"""
Progress sinks: one tick per completed ROI.
"""

from typing import Optional

from tqdm import tqdm


class NullProgress:
    """Progress sink that ignores every tick."""

    def tick(self, label: Optional[str] = None) -> None:
        pass

    def close(self) -> None:
        pass


class TqdmProgress:
    """Progress bar over ROIs, the last finished ROI name shown as postfix."""

    def __init__(self, total: int, desc: str = "Extracting ROIs", unit: str = "roi"):
        self._bar = tqdm(total=total, desc=desc, unit=unit, leave=False)

    def tick(self, label: Optional[str] = None) -> None:
        if label:
            self._bar.set_postfix_str(label, refresh=False)
        self._bar.update(1)

    def close(self) -> None:
        self._bar.close()


def make_progress(total: int, enabled: bool = True):
    if not enabled or total == 0:
        return NullProgress()
    return TqdmProgress(total)

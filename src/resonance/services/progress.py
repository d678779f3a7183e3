from __future__ import annotations

import re

# Overall progress bands, in percent of the user-facing scale.
PROVISIONING_START = 10
PROVISIONING_STEP = 20
ENGINE_START = 30
ENGINE_END = 95
COMPLETED = 100

# tqdm draws "  42%|████      | 1234/2900 [00:10<00:14, ...]" on stderr.
_PERCENT_BAR = re.compile(r"(\d{1,3})%\|")


def parse_progress(raw_chunk: str) -> int | None:
    """Return the last percentage the engine reported in ``raw_chunk``.

    Lines without a progress bar yield ``None``; that is not an error, the
    engine also writes warnings and language detection notes to stderr.
    """
    matches = _PERCENT_BAR.findall(raw_chunk)
    if not matches:
        return None
    return max(0, min(100, int(matches[-1])))


def engine_band(percent: int) -> int:
    """Map an engine-local percentage onto the overall 30-95 band."""
    percent = max(0, min(100, percent))
    return ENGINE_START + (percent * (ENGINE_END - ENGINE_START)) // 100

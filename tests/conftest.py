from __future__ import annotations

import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
for entry in (ROOT, ROOT / "src"):
    if str(entry) not in sys.path:
        sys.path.insert(0, str(entry))


import pytest

from closure_capture.config import RewriteConfig


@pytest.fixture
def whole_module() -> RewriteConfig:
    return RewriteConfig(require_marker=False)

import sys
from pathlib import Path

import pytest


PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from cache_invalidation import page_cache
from validation import reset_rate_limits


@pytest.fixture(autouse=True)
def _fresh_process_state():
    page_cache.clear()
    reset_rate_limits()
    yield
    page_cache.clear()
    reset_rate_limits()

from __future__ import annotations

from collections.abc import Iterator

import pytest

from repobot.observability import configure_logging


@pytest.fixture(autouse=True)
def _quiet_logging_after_test() -> Iterator[None]:
    yield
    configure_logging(False)

import pytest

from image_editor.models import EditorConfig


@pytest.fixture
def fast_config() -> EditorConfig:
    """Configuration with no real waiting anywhere."""
    return EditorConfig(
        backoff_base_seconds=0.0,
        poll_interval_seconds=0.01,
        settle_delay_seconds=0.0,
    )

from __future__ import annotations

import pytest

from anonymizer.address.postal_data import get_postal_data
from anonymizer.classification.rule_loader import get_default_rule_sets
from anonymizer.core.settings import get_settings
from anonymizer.ml.metrics import _reset_metrics_collector
from anonymizer.validators.registry import _reset_registry


@pytest.fixture(autouse=True)
def _isolated_singletons():
    """Every test starts with fresh settings, registry, metrics and reference data."""
    get_settings.cache_clear()
    _reset_registry()
    _reset_metrics_collector()
    get_default_rule_sets.cache_clear()
    get_postal_data.cache_clear()
    yield
    get_settings.cache_clear()
    _reset_registry()
    _reset_metrics_collector()

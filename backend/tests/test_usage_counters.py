"""
Usage counter registry tests.

Counters are owned by the domain modules; a failing counter must surface as
UsageUnavailableError, never as zero usage.
"""
import pytest

from backend.core.errors import ConfigurationError, UsageUnavailableError
from backend.features.usage.service import (
    get_module_usage,
    get_usage,
    register_usage_counter,
    unregister_usage_counter,
)
from backend.models.plan import ModuleId


def test_registered_counter_is_called_with_org_id():
    seen = []

    def count_contacts(org_id):
        seen.append(org_id)
        return 42

    register_usage_counter(ModuleId.CRM, "contacts", count_contacts)

    assert get_usage("org_a", "crm", "contacts") == 42
    assert seen == ["org_a"]


def test_counter_is_never_cached():
    counts = iter([1, 2, 3])
    register_usage_counter("crm", "contacts", lambda org_id: next(counts))

    assert [get_usage("org_a", "crm", "contacts") for _ in range(3)] == [1, 2, 3]


def test_unregistered_counter_is_configuration_error():
    with pytest.raises(ConfigurationError):
        get_usage("org_a", "crm", "contacts")


def test_counters_only_for_quota_features():
    with pytest.raises(ConfigurationError):
        register_usage_counter("crm", "export_enabled", lambda org_id: 0)
    with pytest.raises(ConfigurationError):
        register_usage_counter("crm", "stats_blurred", lambda org_id: 0)


def test_failing_counter_raises_usage_unavailable():
    def broken(org_id):
        raise ConnectionError("crm database down")

    register_usage_counter("crm", "contacts", broken)

    with pytest.raises(UsageUnavailableError) as exc:
        get_usage("org_a", "crm", "contacts")
    assert isinstance(exc.value.__cause__, ConnectionError)


@pytest.mark.parametrize("bad", [None, -1, "12", 3.5, True])
def test_invalid_count_raises_usage_unavailable(bad):
    register_usage_counter("crm", "contacts", lambda org_id: bad)
    with pytest.raises(UsageUnavailableError):
        get_usage("org_a", "crm", "contacts")


def test_unregister_counter():
    register_usage_counter("crm", "contacts", lambda org_id: 1)
    assert get_usage("org_a", "crm", "contacts") == 1

    unregister_usage_counter("crm", "contacts")
    with pytest.raises(ConfigurationError):
        get_usage("org_a", "crm", "contacts")


def test_module_usage_covers_every_counted_quota():
    register_usage_counter("hr", "employees", lambda org_id: 4)
    register_usage_counter("hr", "leave_types", lambda org_id: 2)
    register_usage_counter("hr", "contracts_per_employee", lambda org_id: 1)
    assert get_module_usage("org_a", ModuleId.HR) == {"employees": 4, "leave_types": 2, "contracts_per_employee": 1}


def test_module_usage_for_selected_features():
    register_usage_counter("hr", "employees", lambda org_id: 4)
    assert get_module_usage("org_a", ModuleId.HR, ["employees"]) == {"employees": 4}


def test_module_usage_skips_per_item_ceilings():
    register_usage_counter("docs", "storage_mb", lambda org_id: 200)
    register_usage_counter("docs", "folders", lambda org_id: 4)
    assert get_module_usage("org_a", ModuleId.DOCS) == {"storage_mb": 200, "folders": 4}


def test_per_item_ceiling_has_no_counter():
    with pytest.raises(ConfigurationError):
        register_usage_counter("docs", "max_file_size_mb", lambda org_id: 0)

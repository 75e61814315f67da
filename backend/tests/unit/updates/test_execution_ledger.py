"""
Tests for the database-backed execution ledger.
"""

import pytest

from updates.ledger import (
    STATUS_FAILED,
    STATUS_LAUNCHED,
    STATUS_RUNNING,
    STATUS_SUCCESS,
)


@pytest.mark.unit
class TestDatabaseExecutionLedger:

    def test_begin_creates_running_record(self, ledger):
        handle = ledger.begin('web', None, 'scheduler')

        record = ledger.get(handle)
        assert record['status'] == STATUS_RUNNING
        assert record['targetName'] == 'web'
        assert record['environmentId'] is None
        assert record['kind'] == 'container'
        assert record['startedAt'] is not None
        assert record['completedAt'] is None

    def test_environment_id_stored_as_text(self, ledger):
        handle = ledger.begin('web', 2, 'api')
        assert ledger.get(handle)['environmentId'] == '2'

    def test_log_lines_appended_in_order(self, ledger):
        handle = ledger.begin('web', None, 'user')
        assert ledger.append_log(handle, 'Pulling nginx:1.25')
        assert ledger.append_log(handle, 'Promoted new image')

        lines = ledger.get(handle)['logLines']
        assert len(lines) == 2
        assert lines[0].endswith('Pulling nginx:1.25')
        assert lines[1].startswith('[')

    def test_complete_sets_terminal_status(self, ledger):
        handle = ledger.begin('web', None, 'user')
        assert ledger.complete(handle, STATUS_SUCCESS, details={'summary': {'updated': 1}})

        record = ledger.get(handle)
        assert record['status'] == STATUS_SUCCESS
        assert record['resultDetails'] == {'summary': {'updated': 1}}
        assert record['completedAt'] is not None

    def test_completed_record_is_immutable(self, ledger):
        handle = ledger.begin('web', None, 'user')
        ledger.complete(handle, STATUS_FAILED, error='Pull failed')

        assert not ledger.complete(handle, STATUS_SUCCESS)
        assert not ledger.append_log(handle, 'late line')

        record = ledger.get(handle)
        assert record['status'] == STATUS_FAILED
        assert record['error'] == 'Pull failed'
        assert record['logLines'] == []

    def test_running_is_not_a_terminal_status(self, ledger):
        handle = ledger.begin('web', None, 'user')
        with pytest.raises(ValueError):
            ledger.complete(handle, STATUS_RUNNING)

    def test_self_update_records(self, ledger):
        handle = ledger.begin('dockwarden', None, 'user', kind='self_update')
        ledger.complete(handle, STATUS_LAUNCHED, details={'helperId': 'abc'})

        record = ledger.get(handle)
        assert record['kind'] == 'self_update'
        assert record['status'] == STATUS_LAUNCHED

    def test_unknown_handle(self, ledger):
        assert ledger.get(999) is None
        assert not ledger.append_log(999, 'line')
        assert not ledger.complete(999, STATUS_SUCCESS)

"""
Unit tests for retention policy enforcement (cloudkeeper/backup/retention.py).

Tests the pure selection helpers and RetentionManager deletion passes.
"""

from datetime import datetime, timedelta, timezone

import pytest
from freezegun import freeze_time
from google.auth.exceptions import TransportError

from cloudkeeper.backup.errors import ConfigError, StorageError
from cloudkeeper.backup.models import RemoteEntry, RetentionPolicy
from cloudkeeper.backup.retention import (
    RetentionManager,
    filter_by_patterns,
    matches_pattern,
    select_for_deletion
)


PATTERNS = ('all-databases-*.sql', 'db-*.sql', '*.tar.gz')


def count_policy(keep_last, patterns=PATTERNS):
    return RetentionPolicy(strategy=RetentionPolicy.COUNT, keep_last=keep_last, name_patterns=patterns)


def age_policy(days, patterns=PATTERNS):
    return RetentionPolicy(strategy=RetentionPolicy.AGE, max_age_days=days, name_patterns=patterns)


class TestPatternMatching:
    """Test glob matching of remote file names."""

    def test_db_pattern_matches_dump_name(self):
        assert matches_pattern('db-shop-2024.sql', ['db-*.sql'])

    def test_db_pattern_rejects_other_names(self):
        assert not matches_pattern('shop-2024.sql', ['db-*.sql'])
        assert not matches_pattern('db-shop-2024.sql.gz', ['db-*.sql'])

    def test_question_mark_matches_exactly_one_character(self):
        assert matches_pattern('db-a.sql', ['db-?.sql'])
        assert not matches_pattern('db-ab.sql', ['db-?.sql'])
        assert not matches_pattern('db-.sql', ['db-?.sql'])

    def test_matching_is_case_sensitive(self):
        assert not matches_pattern('DB-shop.sql', ['db-*.sql'])

    def test_dot_is_literal(self):
        assert not matches_pattern('db-shopXsql', ['db-*.sql'])

    def test_no_patterns_matches_nothing(self):
        assert not matches_pattern('db-shop.sql', [])

    def test_filter_is_idempotent(self, remote_entries):
        entries = remote_entries(['db-a.sql', 'notes.txt', 'site-1.tar.gz', 'db-b.sql.bak'])

        once = filter_by_patterns(entries, PATTERNS)
        twice = filter_by_patterns(once, PATTERNS)

        assert once == twice
        assert [entry.name for entry in once] == ['site-1.tar.gz', 'db-a.sql']


class TestSelectForDeletion:
    """Test the count and age strategies."""

    def test_count_keeps_newest(self, remote_entries):
        entries = remote_entries([
            'all-databases-T1.sql',
            'all-databases-T2.sql',
            'all-databases-T3.sql'
        ])

        selected = select_for_deletion(entries, count_policy(2))

        assert [entry.id for entry in selected] == ['1']

    @pytest.mark.parametrize('n,k', [(0, 3), (3, 3), (5, 2), (10, 0), (2, 7)])
    def test_count_selects_oldest_n_minus_k(self, remote_entries, n, k):
        entries = remote_entries([f'db-x-{i}.sql' for i in range(n)])

        selected = select_for_deletion(entries, count_policy(k))

        assert len(selected) == max(0, n - k)
        assert selected == entries[k:]

    def test_count_never_selects_unmatched_names(self, remote_entries):
        entries = remote_entries(['notes.txt', 'photo.jpg', 'db-a.sql'])

        selected = select_for_deletion(entries, count_policy(0))

        assert [entry.name for entry in selected] == ['db-a.sql']

    def test_count_counts_only_eligible_entries(self, remote_entries):
        # Unrelated files must not take up keep_last slots
        entries = remote_entries(['db-1.sql', 'db-2.sql', 'readme.txt', 'other.txt'])

        selected = select_for_deletion(entries, count_policy(2))

        assert selected == []

    def test_age_selects_strictly_older_than_cutoff(self):
        now = datetime(2024, 1, 31, tzinfo=timezone.utc)
        entries = [
            self._entry('3', 'db-new.sql', now - timedelta(days=1)),
            self._entry('2', 'db-edge.sql', now - timedelta(days=7)),
            self._entry('1', 'db-old.sql', now - timedelta(days=7, seconds=1)),
        ]

        selected = select_for_deletion(entries, age_policy(7), now=now)

        assert [entry.id for entry in selected] == ['1']

    def test_age_ignores_count(self, remote_entries):
        now = datetime(2024, 6, 1, tzinfo=timezone.utc)
        entries = remote_entries([f'db-{i}.sql' for i in range(3)])

        selected = select_for_deletion(entries, age_policy(30), now=now)

        assert len(selected) == 3

    @freeze_time("2024-01-15")
    def test_age_defaults_to_current_time(self, remote_entries):
        entries = remote_entries(['db-1.sql', 'db-2.sql', 'db-3.sql'], start=datetime(2024, 1, 5, tzinfo=timezone.utc))

        selected = select_for_deletion(entries, age_policy(9))

        # Jan 5 is older than Jan 6 (now - 9 days); Jan 6 and Jan 7 are not
        assert [entry.name for entry in selected] == ['db-1.sql']

    def test_age_without_max_age_falls_back_to_count(self, remote_entries):
        policy = RetentionPolicy(strategy='age', max_age_days=None, keep_last=1, name_patterns=PATTERNS)
        entries = remote_entries(['db-1.sql', 'db-2.sql'])

        selected = select_for_deletion(entries, policy)

        assert [entry.name for entry in selected] == ['db-1.sql']

    def test_naive_timestamps_are_treated_as_utc(self):
        now = datetime(2024, 1, 31, tzinfo=timezone.utc)
        entries = [self._entry('1', 'db-old.sql', datetime(2024, 1, 1))]

        selected = select_for_deletion(entries, age_policy(7), now=now)

        assert len(selected) == 1

    def test_unknown_strategy_is_rejected(self):
        with pytest.raises(ConfigError):
            RetentionPolicy(strategy='cuont')

    @staticmethod
    def _entry(entry_id, name, created_at):
        return RemoteEntry(id=entry_id, name=name, created_at=created_at)


class TestRetentionManager:
    """Test deletion passes against a fake store."""

    def test_delete_all_counts_confirmed_deletions(self, fake_store, fake_credentials, sink, remote_entries):
        fake_store.entries = remote_entries(['db-1.sql', 'db-2.sql', 'db-3.sql'])
        fake_store.delete_errors['2'] = StorageError("boom")
        manager = RetentionManager(fake_store, fake_credentials, 'folder', count_policy(0), sink)

        deleted = manager.delete_all(fake_store.entries)

        assert deleted == 2
        assert fake_store.deleted == ['3', '1']
        assert any('db-2.sql' in message for message in sink.messages('error'))

    def test_delete_all_does_not_retry_missing_entries(self, fake_store, fake_credentials, sink, remote_entries):
        entries = remote_entries(['db-1.sql', 'db-2.sql'])
        fake_store.entries = entries[:1]
        manager = RetentionManager(fake_store, fake_credentials, 'folder', count_policy(0), sink)

        deleted = manager.delete_all(entries)

        assert deleted == 1
        assert fake_store.deleted == ['2']

    def test_delete_all_never_revisits_an_id(self, fake_store, fake_credentials, remote_entries):
        entries = remote_entries(['db-1.sql'])
        fake_store.entries = list(entries)
        manager = RetentionManager(fake_store, fake_credentials, 'folder', count_policy(0))

        deleted = manager.delete_all(entries + entries)

        assert deleted == 1
        assert fake_store.deleted == ['1']

    def test_delete_all_continues_past_unexpected_errors(self, fake_store, fake_credentials, sink, remote_entries):
        entries = remote_entries(['db-1.sql', 'db-2.sql', 'db-3.sql'])
        fake_store.entries = list(entries)
        fake_credentials.ensure_errors = [TransportError('token endpoint unreachable')]
        manager = RetentionManager(fake_store, fake_credentials, 'folder', count_policy(0), sink)

        deleted = manager.delete_all(entries)

        assert deleted == 2
        assert fake_store.deleted == ['2', '1']
        assert manager._failed == ['3']
        assert any('db-3.sql' in message for message in sink.messages('error'))

    def test_no_failures_before_first_pass(self, fake_store, fake_credentials):
        manager = RetentionManager(fake_store, fake_credentials, 'folder', count_policy(0))

        assert manager._failed == []

    def test_cleanup_remote_unexpected_listing_error_is_not_raised(self, fake_store, fake_credentials, sink):
        fake_credentials.ensure_errors = [TransportError('token endpoint unreachable')]
        manager = RetentionManager(fake_store, fake_credentials, 'folder', count_policy(1), sink)

        result = manager.cleanup_remote()

        assert result.listed == 0
        assert ('end', 'Cleanup of old backups', False) in sink.events

    def test_delete_all_obtains_credential_per_call(self, fake_store, fake_credentials, remote_entries):
        fake_store.entries = remote_entries(['db-1.sql', 'db-2.sql'])
        manager = RetentionManager(fake_store, fake_credentials, 'folder', count_policy(0))

        manager.delete_all(list(fake_store.entries))

        assert fake_credentials.ensure_calls == 2

    def test_cleanup_remote_uses_fresh_listing(self, fake_store, fake_credentials, remote_entries):
        fake_store.entries = remote_entries(['db-1.sql', 'db-2.sql', 'db-3.sql'])
        manager = RetentionManager(fake_store, fake_credentials, 'folder', count_policy(2))

        first = manager.cleanup_remote()
        second = manager.cleanup_remote()

        assert fake_store.list_calls == 2
        assert first.deleted == 1
        assert second.selected == 0

    def test_cleanup_remote_disabled(self, fake_store, fake_credentials, sink):
        policy = RetentionPolicy(enabled=False, name_patterns=PATTERNS)
        manager = RetentionManager(fake_store, fake_credentials, 'folder', policy, sink)

        result = manager.cleanup_remote()

        assert result.deleted == 0
        assert fake_store.list_calls == 0

    def test_cleanup_remote_listing_failure_is_not_raised(self, fake_store, fake_credentials, sink):
        fake_store.list_error = StorageError("listing failed")
        manager = RetentionManager(fake_store, fake_credentials, 'folder', count_policy(1), sink)

        result = manager.cleanup_remote()

        assert result.deleted == 0
        assert ('end', 'Cleanup of old backups', False) in sink.events

    def test_cleanup_remote_auth_failure_is_not_raised(self, fake_store, fake_credentials):
        fake_credentials.valid = False
        manager = RetentionManager(fake_store, fake_credentials, 'folder', count_policy(1))

        result = manager.cleanup_remote()

        assert result.listed == 0

    def test_cleanup_remote_reports_failures(self, fake_store, fake_credentials, remote_entries):
        fake_store.entries = remote_entries(['db-1.sql', 'db-2.sql', 'notes.txt'])
        fake_store.delete_errors['1'] = StorageError("denied")
        manager = RetentionManager(fake_store, fake_credentials, 'folder', count_policy(0))

        result = manager.cleanup_remote()

        assert result.listed == 3
        assert result.eligible == 2
        assert result.selected == 2
        assert result.deleted == 1
        assert result.failed == ['1']
        assert [entry.name for entry in fake_store.entries] == ['notes.txt', 'db-1.sql']

    @freeze_time("2024-03-01")
    def test_cleanup_remote_age_strategy(self, fake_store, fake_credentials, remote_entries):
        fake_store.entries = remote_entries(
            ['db-1.sql', 'db-2.sql', 'db-3.sql'],
            start=datetime(2024, 2, 1, tzinfo=timezone.utc),
            step=timedelta(days=14)
        )
        manager = RetentionManager(fake_store, fake_credentials, 'folder', age_policy(20))

        result = manager.cleanup_remote()

        # Cutoff is Feb 10; only the Feb 1 backup is older
        assert result.deleted == 1
        assert fake_store.deleted == ['1']

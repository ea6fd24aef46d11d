"""Tests for the background billing loop."""

from unittest.mock import patch, MagicMock

from cloudy.background import billing as billing_thread
from cloudy.core import billing, notifications
from cloudy.core.db import get_db


def _backdate(record_id, started='2000-01-01T00:00:00'):
    get_db().execute('UPDATE usage_records SET started_at = ? WHERE id = ?', (started, record_id))


class TestBillingSettings:
    def test_defaults(self, db):
        enabled, interval = billing_thread._billing_settings()

        assert enabled is False
        assert interval == 3600

    def test_from_server_settings(self, db):
        db.save_server_setting('billing_enabled', True)
        db.save_server_setting('billing_interval', 600)

        assert billing_thread._billing_settings() == (True, 600)


class TestBillingCycle:
    def test_failed_charge_notifies_user(self, alice):
        record = billing.start_usage_tracking(alice['id'], 101, 'pve1', 2, 2048, 10)
        _backdate(record['id'])

        results = billing_thread.run_billing_cycle()

        assert results[0]['success'] is False
        inbox = notifications.list_for_user(alice['id'])['notifications']
        assert inbox[0]['title'] == 'Billing failed'
        assert '101' in inbox[0]['message']

    def test_nothing_due_is_silent(self, alice):
        billing.start_usage_tracking(alice['id'], 101, 'pve1', 1, 1024, 10)

        assert billing_thread.run_billing_cycle() == []
        assert notifications.list_for_user(alice['id'])['unread'] == 0


class TestBillingLoop:
    def test_loop_runs_once_and_stops(self, db):
        db.save_server_setting('billing_enabled', True)

        def stop_after_first_wait(timeout):
            billing_thread._stop_event.set()
            return True

        with patch.object(billing_thread, 'run_billing_cycle') as cycle, \
                patch.object(billing_thread._stop_event, 'wait', side_effect=stop_after_first_wait):
            billing_thread._stop_event.clear()
            billing_thread.billing_loop()

        cycle.assert_called_once()

    def test_loop_survives_errors(self, db):
        db.save_server_setting('billing_enabled', True)

        def stop_after_first_wait(timeout):
            billing_thread._stop_event.set()
            return True

        with patch.object(billing_thread, 'run_billing_cycle', side_effect=RuntimeError('db locked')), \
                patch.object(billing_thread._stop_event, 'wait', side_effect=stop_after_first_wait):
            billing_thread._stop_event.clear()
            billing_thread.billing_loop()

    def test_disabled_billing_skips_cycle(self, db):
        def stop_after_first_wait(timeout):
            billing_thread._stop_event.set()
            return True

        with patch.object(billing_thread, 'run_billing_cycle') as cycle, \
                patch.object(billing_thread._stop_event, 'wait', side_effect=stop_after_first_wait):
            billing_thread._stop_event.clear()
            billing_thread.billing_loop()

        cycle.assert_not_called()

    def test_loop_prunes_rate_state(self, db):
        def stop_after_first_wait(timeout):
            billing_thread._stop_event.set()
            return True

        with patch.object(billing_thread, 'prune_rate_state') as prune, \
                patch.object(billing_thread._stop_event, 'wait', side_effect=stop_after_first_wait):
            billing_thread._stop_event.clear()
            billing_thread.billing_loop()

        prune.assert_called_once()


class TestThreadLifecycle:
    def test_start_then_stop(self):
        with patch.object(billing_thread, '_billing_settings', return_value=(False, 3600)), \
                patch.object(billing_thread, 'cleanup_expired_sessions'), \
                patch.object(billing_thread, 'prune_sessions'), \
                patch.object(billing_thread, 'prune_rate_state'):
            thread = billing_thread.start_billing_thread()
            assert billing_thread.start_billing_thread() is thread

            billing_thread.stop_billing_thread()

        assert not thread.is_alive()

    def test_server_shutdown_stops_billing(self, db):
        from cloudy import app as app_module
        fake_app = MagicMock()

        with patch.object(app_module, 'create_app', return_value=fake_app), \
                patch.object(app_module, '_gevent_active', return_value=False), \
                patch.object(billing_thread, 'start_billing_thread') as start, \
                patch.object(billing_thread, 'stop_billing_thread') as stop:
            app_module.main()

        start.assert_called_once()
        fake_app.run.assert_called_once()
        stop.assert_called_once()

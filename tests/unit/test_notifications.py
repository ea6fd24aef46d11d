"""Tests for in-app notifications."""

import pytest

from cloudy.core import notifications
from cloudy.core.errors import NotFoundError, ValidationError


class TestNotifications:
    def test_create_and_list(self, alice):
        notifications.create(alice['id'], 'Instance created', 'web (101) is being deployed', 'success')
        notifications.create(alice['id'], 'Low balance', 'Top up soon', 'warning')

        result = notifications.list_for_user(alice['id'])

        assert result['unread'] == 2
        assert {n['title'] for n in result['notifications']} == {'Instance created', 'Low balance'}

    def test_invalid_type(self, alice):
        with pytest.raises(ValidationError):
            notifications.create(alice['id'], 't', 'm', 'critical')

    def test_notify_never_raises(self, alice):
        assert notifications.notify(alice['id'], 't', 'm', 'critical') is None
        assert notifications.notify(None, 't', 'm') is None

    def test_mark_read(self, alice):
        note = notifications.create(alice['id'], 't', 'm')

        notifications.mark_read(alice['id'], note['id'])

        assert notifications.list_for_user(alice['id'])['unread'] == 0

    def test_users_only_touch_their_own(self, alice, bob):
        note = notifications.create(alice['id'], 't', 'm')

        with pytest.raises(NotFoundError):
            notifications.mark_read(bob['id'], note['id'])
        with pytest.raises(NotFoundError):
            notifications.delete(bob['id'], note['id'])
        assert notifications.list_for_user(bob['id']) == {'notifications': [], 'unread': 0}

    def test_mark_all_read_and_delete(self, alice):
        first = notifications.create(alice['id'], 'a', 'm')
        notifications.create(alice['id'], 'b', 'm')

        assert notifications.mark_all_read(alice['id']) == 2
        notifications.delete(alice['id'], first['id'])

        result = notifications.list_for_user(alice['id'])
        assert [n['title'] for n in result['notifications']] == ['b']
        assert result['unread'] == 0

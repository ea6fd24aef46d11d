"""Tests for input validation helpers."""

import pytest

from cloudy.core.errors import ValidationError
from cloudy.utils.sanitization import (
    parse_instance_id, detect_vm_type, validate_node, validate_storage, validate_snapname,
    validate_email, validate_username, validate_non_negative_int, validate_guest_name,
)


class TestInstanceId:
    def test_plain_and_prefixed(self):
        assert parse_instance_id('101') == 101
        assert parse_instance_id(101) == 101
        assert parse_instance_id('lxc105') == 105
        assert parse_instance_id('qemu-200') == 200

    @pytest.mark.parametrize('raw', ['', None, 'abc', '99', '1000000000'])
    def test_rejected(self, raw):
        with pytest.raises(ValidationError):
            parse_instance_id(raw)

    def test_detect_vm_type(self):
        assert detect_vm_type('lxc105') == 'lxc'
        assert detect_vm_type('105') == 'qemu'
        assert detect_vm_type('105', 'LXC') == 'lxc'
        with pytest.raises(ValidationError):
            detect_vm_type('105', 'docker')


class TestNames:
    def test_node(self):
        assert validate_node(' pve1 ') == 'pve1'
        with pytest.raises(ValidationError):
            validate_node('')
        with pytest.raises(ValidationError):
            validate_node('pve1/../etc')

    def test_storage(self):
        assert validate_storage('local-lvm') == 'local-lvm'
        with pytest.raises(ValidationError):
            validate_storage('1local')

    def test_snapname(self):
        assert validate_snapname('before_upgrade-1') == 'before_upgrade-1'
        with pytest.raises(ValidationError):
            validate_snapname('1st')
        with pytest.raises(ValidationError):
            validate_snapname('a' * 41)

    def test_email(self):
        assert validate_email(' Alice@Example.COM ') == 'alice@example.com'
        with pytest.raises(ValidationError):
            validate_email('not-an-email')

    def test_username(self):
        assert validate_username('alice.b') == 'alice.b'
        with pytest.raises(ValidationError):
            validate_username('a')
        with pytest.raises(ValidationError):
            validate_username('alice bob')

    def test_guest_name(self):
        assert validate_guest_name('web-01') == 'web-01'
        with pytest.raises(ValidationError):
            validate_guest_name('web_01')
        with pytest.raises(ValidationError):
            validate_guest_name('web-')


class TestNonNegativeInt:
    def test_accepts(self):
        assert validate_non_negative_int('4', 'maxCpu') == 4
        assert validate_non_negative_int(0, 'maxCpu') == 0
        assert validate_non_negative_int(2.0, 'maxCpu') == 2

    @pytest.mark.parametrize('value', [-1, 'x', None, True, 1.5])
    def test_rejects(self, value):
        with pytest.raises(ValidationError):
            validate_non_negative_int(value, 'maxCpu')

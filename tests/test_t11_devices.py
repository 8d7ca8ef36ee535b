from datetime import datetime, timedelta, timezone

import pytest

from devicelink import devices, request_context
from devicelink.errors import DeviceNameTaken, InvalidClientType, InvalidInput, NotFound

T0 = datetime(2024, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


def test_t11_add_device(ctx):
    """T-11: a device records its creation address and reserves its name."""
    device = devices.add_device(ctx, 1, "Pixel 8", "android_phone", now=T0)
    assert device.last_ip == "203.0.113.7"
    assert device.created == T0
    assert ctx.store.reserved_by(devices.DEVICE_NAMES, devices._name_field(1, "pixel 8")) is not None


@pytest.mark.parametrize("client_type", ["", "ios_phone", "Website"])
def test_t11_client_type_checked(ctx, client_type):
    """T-11: only the four known client types are accepted."""
    with pytest.raises(InvalidClientType):
        devices.add_device(ctx, 1, "Thing", client_type)


def test_t11_empty_name_rejected(ctx):
    """T-11: devices need a name."""
    with pytest.raises(InvalidInput):
        devices.add_device(ctx, 1, "   ", "website")


def test_t11_names_unique_per_user(ctx):
    """T-11: two devices of one user cannot share a name, other users can."""
    devices.add_device(ctx, 1, "Laptop", "website")
    with pytest.raises(DeviceNameTaken):
        devices.add_device(ctx, 1, "laptop", "chrome_extension")
    devices.add_device(ctx, 2, "Laptop", "website")
    assert len(devices.list_devices_by_user(ctx, 1)) == 1


def test_t11_rename_moves_reservation(ctx):
    """T-11: renaming frees the old name and takes the new one."""
    device = devices.add_device(ctx, 1, "Old", "android_tablet")
    devices.update_device(ctx, device, name="New")
    assert device.name == "New"
    devices.add_device(ctx, 1, "Old", "website")
    with pytest.raises(DeviceNameTaken):
        devices.add_device(ctx, 1, "new", "website")


def test_t11_touch_updates_last_seen_and_ip(app, ctx):
    """T-11: touching records when and from where the device was seen."""
    device = devices.add_device(ctx, 1, "Phone", "android_phone", now=T0)
    other = request_context(ip="198.51.100.4")
    devices.touch_device(other, device, now=T0 + timedelta(hours=3))
    assert device.last_seen == T0 + timedelta(hours=3)
    assert device.last_ip == "198.51.100.4"


def test_t11_list_orders_by_last_seen(ctx):
    """T-11: most recently seen devices come first."""
    a = devices.add_device(ctx, 1, "A", "website", now=T0)
    b = devices.add_device(ctx, 1, "B", "website", now=T0 + timedelta(hours=1))
    devices.touch_device(ctx, a, now=T0 + timedelta(hours=2))
    assert [d.id for d in devices.list_devices_by_user(ctx, 1)] == [a.id, b.id]


def test_t11_delete(ctx):
    """T-11: deleting frees the name; deleting by user removes the rest."""
    a = devices.add_device(ctx, 1, "A", "website")
    devices.add_device(ctx, 1, "B", "website")
    a_id = a.id
    devices.delete_device(ctx, a)
    with pytest.raises(NotFound):
        devices.get_device(ctx, a_id)
    devices.add_device(ctx, 1, "A", "website")
    assert devices.delete_devices_by_user(ctx, 1) == 2
    assert devices.list_devices_by_user(ctx, 1) == []
    assert ctx.store.hgetall(devices.DEVICE_NAMES) == {}


def test_t11_push_key_and_use(ctx):
    """T-11: push keys are stored trimmed and their last use is recorded."""
    device = devices.add_device(ctx, 1, "Phone", "android_phone", push_key="  gcm-key ")
    assert device.push_key == "gcm-key"
    devices.mark_push_used(ctx, device, now=T0)
    assert device.push_last_used == T0


def test_t11_rejected_update_keeps_names_free(ctx):
    """T-11: an invalid client type rejects the rename without holding the new name."""
    from devicelink import payments

    device = devices.add_device(ctx, 1, "Old", "website")
    with pytest.raises(InvalidClientType):
        devices.update_device(ctx, device, name="New", client_type="ios_phone")
    payments.add_payment(ctx, 5)
    ctx.db.expire_all()
    assert devices.get_device(ctx, device.id).name == "Old"
    assert devices.add_device(ctx, 1, "New", "website").name == "New"
    with pytest.raises(DeviceNameTaken):
        devices.add_device(ctx, 1, "old", "website")

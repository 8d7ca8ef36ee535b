"""
Devices owned by a user. Names are unique per user, case-insensitively,
through a reservation in ``device_names_to_ids``.
"""
import logging
from datetime import datetime

from .audit import created, deleted, diff, snapshot
from .errors import DeviceNameTaken, InvalidClientType, InvalidInput, NotFound
from .ids import id_to_str
from .models import Device, utcnow

log = logging.getLogger(__name__)

DEVICE_NAMES = "device_names_to_ids"
CLIENT_TYPES = ("android_phone", "android_tablet", "website", "chrome_extension")


def device_key(device_id: int) -> str:
    return f"devices:{id_to_str(device_id)}"


def _name_field(user_id: int, name: str) -> str:
    return f"{id_to_str(user_id)}:{name}"


def _check_client_type(client_type: str) -> str:
    client_type = (client_type or "").strip()
    if client_type not in CLIENT_TYPES:
        log.debug("Invalid client type: %s", client_type)
        raise InvalidClientType()
    return client_type


def _check_name(name: str) -> str:
    name = (name or "").strip()
    if not name:
        raise InvalidInput("Device name empty.")
    return name


def add_device(ctx, user_id: int, name: str, client_type: str, push_key: str | None = None,
               now: datetime | None = None) -> Device:
    ctx.ensure_writable()
    name = _check_name(name)
    client_type = _check_client_type(client_type)
    now = now or utcnow()
    device = Device(
        id=ctx.ids.next(),
        name=name,
        client_type=client_type,
        last_seen=now,
        last_ip=ctx.ip or None,
        created=now,
        push_key=(push_key or "").strip() or None,
        user_id=user_id,
    )
    owner = id_to_str(device.id)
    ctx.store.reserve(DEVICE_NAMES, _name_field(user_id, name), owner, conflict=DeviceNameTaken)
    try:
        with ctx.transaction() as session:
            session.add(device)
    except Exception:
        ctx.store.release(DEVICE_NAMES, _name_field(user_id, name), owner)
        raise
    ctx.audit(device_key(device.id), created(snapshot(device, Device.AUDITED)))
    return device


def get_device(ctx, device_id: int) -> Device:
    device = ctx.db.get(Device, device_id)
    if device is None:
        raise NotFound("Device not found.")
    return device


def list_devices_by_user(ctx, user_id: int) -> list[Device]:
    return Device.query.filter_by(user_id=user_id).order_by(Device.last_seen.desc()).all()


def update_device(ctx, device: Device, name: str | None = None, client_type: str | None = None,
                  push_key: str | None = None) -> Device:
    ctx.ensure_writable()
    name = name.strip() if name is not None else ""
    client_type = _check_client_type(client_type) if client_type is not None and client_type.strip() else None
    push_key = push_key.strip() if push_key is not None else ""

    before = snapshot(device, Device.AUDITED)
    owner = id_to_str(device.id)
    old_name = device.name
    renamed = False
    if name:
        if name.lower() != old_name.lower():
            ctx.store.reserve(DEVICE_NAMES, _name_field(device.user_id, name), owner, conflict=DeviceNameTaken)
            renamed = True
        device.name = name
    if client_type is not None:
        device.client_type = client_type
    if push_key:
        device.push_key = push_key
    changes = diff(before, snapshot(device, Device.AUDITED))
    if not changes:
        return device
    try:
        ctx.commit()
    except Exception:
        if renamed:
            ctx.store.release(DEVICE_NAMES, _name_field(device.user_id, name), owner)
        raise
    if renamed:
        ctx.store.release(DEVICE_NAMES, _name_field(device.user_id, old_name), owner)
    ctx.audit(device_key(device.id), changes)
    return device


def touch_device(ctx, device: Device, now: datetime | None = None) -> Device:
    """Record that the device was just seen from the request's address."""
    before = snapshot(device, Device.AUDITED)
    device.last_seen = now or utcnow()
    device.last_ip = ctx.ip or device.last_ip
    ctx.commit()
    ctx.audit(device_key(device.id), diff(before, snapshot(device, Device.AUDITED)))
    return device


def mark_push_used(ctx, device: Device, now: datetime | None = None) -> Device:
    device.push_last_used = now or utcnow()
    ctx.commit()
    return device


def delete_device(ctx, device: Device) -> None:
    ctx.ensure_writable()
    device_id, user_id, name = device.id, device.user_id, device.name
    before = snapshot(device, Device.AUDITED)
    with ctx.transaction() as session:
        session.delete(device)
    ctx.store.release(DEVICE_NAMES, _name_field(user_id, name), id_to_str(device_id))
    ctx.audit(device_key(device_id), deleted(before))


def delete_devices_by_user(ctx, user_id: int) -> int:
    ctx.ensure_writable()
    doomed = [(d.id, d.name, snapshot(d, Device.AUDITED)) for d in list_devices_by_user(ctx, user_id)]
    if not doomed:
        return 0
    with ctx.transaction():
        Device.query.filter_by(user_id=user_id).delete(synchronize_session=False)
    pipe = ctx.store.batch()
    for _, name, _ in doomed:
        pipe.hdel(DEVICE_NAMES, _name_field(user_id, name).lower())
    ctx.store.flush(pipe)
    for device_id, _, before in doomed:
        ctx.audit(device_key(device_id), deleted(before))
    return len(doomed)

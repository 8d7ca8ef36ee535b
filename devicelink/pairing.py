"""
Device pairing handshake.

``issue`` draws two five-character tokens, stores the user id under the
alphabetised pair for five minutes and returns the pair; the user types
both tokens into the other device, which calls ``redeem``. Redeeming does
not consume the ticket: both sides of the handshake may look it up until
it expires.

Tokens are drawn with ``secrets.choice`` (the OS CSPRNG).
"""
import logging
import secrets

from redis import exceptions as redis_exc

from .errors import CoreError, InvalidCredentials, TokenCollision
from .ids import id_from_str, id_to_str

log = logging.getLogger(__name__)

# Read aloud by users: no 0/O/o, 1/l/i/I, u/v.
ALPHABET = "abcdefghjkmnpqrstwxyzABCDEFGHJKMNPQRSTWXYZ23456789"
TOKEN_LENGTH = 5
TICKET_TTL = 300

_ALPHABET_SET = frozenset(ALPHABET)


def generate_token() -> str:
    return "".join(secrets.choice(ALPHABET) for _ in range(TOKEN_LENGTH))


def canonical_pair(first: str, second: str) -> tuple[str, str]:
    if first <= second:
        return first, second
    return second, first


def ticket_key(first: str, second: str) -> str:
    a, b = canonical_pair(first, second)
    return f"tokens:{a}:{b}"


def is_well_formed(token: str) -> bool:
    return len(token) == TOKEN_LENGTH and set(token) <= _ALPHABET_SET


def issue(ctx, user_id: int) -> tuple[str, str]:
    ctx.ensure_writable()
    a, b = canonical_pair(generate_token(), generate_token())
    owner = id_to_str(user_id)
    if not ctx.store.set_if_absent(ticket_key(a, b), owner, ttl=TICKET_TTL):
        ctx.telemetry.incr("pairing.collision")
        raise TokenCollision()
    ctx.telemetry.incr("pairing.issued")
    ctx.audit(f"tokens:{owner}", {a: ("", b)})
    return a, b


def redeem(ctx, first: str, second: str) -> int:
    # Malformed and unknown pairs are indistinguishable to the caller
    if not (isinstance(first, str) and isinstance(second, str)):
        ctx.telemetry.incr("pairing.rejected")
        raise InvalidCredentials()
    first, second = first.strip(), second.strip()
    if not (is_well_formed(first) and is_well_formed(second)):
        ctx.telemetry.incr("pairing.rejected")
        raise InvalidCredentials()
    owner = ctx.store.get(ticket_key(first, second))
    if owner is None:
        ctx.telemetry.incr("pairing.rejected")
        raise InvalidCredentials()
    ctx.telemetry.incr("pairing.redeemed")
    return id_from_str(owner)


def revoke_user_tickets(ctx, user_id: int) -> int:
    """Drop live tickets owned by ``user_id``. Best-effort: they expire anyway."""
    owner = id_to_str(user_id)
    try:
        keys = list(ctx.store.scan_keys("tokens:*:*"))
        if not keys:
            return 0
        pipe = ctx.store.batch()
        for key in keys:
            pipe.get(key)
        owners = ctx.store.flush(pipe, strict=False)
        doomed = [k for k, v in zip(keys, owners) if v == owner]
        removed = ctx.store.delete(*doomed)
    except (CoreError, redis_exc.RedisError) as e:
        log.warning("could not revoke pairing tickets for %s: %s", owner, e)
        ctx.telemetry.incr("pairing.revoke_failed")
        return 0
    for key in doomed:
        _, a, b = key.split(":", 2)
        ctx.audit(f"tokens:{owner}", {a: (b, "")})
    return removed

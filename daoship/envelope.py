"""
Signed Action Envelopes
=======================
Validate that a client-signed message authorizes exactly the mutation
being requested.

A client builds a JSON message such as::

    {"action": "createProposal", "proposalTitle": "...", "daoId": "...",
     "creator": "0x...", "timestamp": 1718000000000, "chainId": "testnet"}

signs it with its wallet, and sends both the message and the signature
alongside the request. The server checks:

1. The message parses into an envelope (action + timestamp + fields)
2. The action is the one being performed
3. Every expected payload field matches exactly
4. The envelope was issued no more than 10 minutes ago

Content checks are pure. Signature authenticity is a separate step
(``SignatureVerifier``) because it needs the signer's public key.
"""

import hashlib
import json
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Mapping, Optional, Union

from ecdsa import BadSignatureError, MalformedPointError, SECP256k1, VerifyingKey

from .errors import EnvelopeError


MAX_ENVELOPE_AGE = timedelta(minutes=10)

# Tolerated client clock drift for envelopes dated slightly in the future
MAX_CLOCK_SKEW = timedelta(minutes=1)

# Field naming the acting wallet, per action
ACTOR_FIELDS = {
    "createDAO": "creator",
    "createProposal": "creator",
    "voteOnProposal": "voter",
    "createToken": "creator",
}

RESERVED_FIELDS = ("action", "timestamp")


@dataclass(frozen=True)
class ActionEnvelope:
    """A parsed signed message describing one privileged action."""
    action: str
    payload: Dict[str, Any]
    actor_identity: Optional[str]
    issued_at: datetime
    raw: str = field(default="", repr=False, compare=False)

    def get(self, name: str, default: Any = None) -> Any:
        return self.payload.get(name, default)


def _from_millis(ms: Union[int, float]) -> datetime:
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc)


def _to_millis(when: datetime) -> int:
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return int(when.timestamp() * 1000)


def build_message(
    action: str,
    payload: Mapping[str, Any],
    issued_at: datetime,
    chain_id: Optional[str] = None,
) -> str:
    """
    Build the canonical JSON message a wallet signs for an action.

    Keys are sorted so the same intent always serializes to the same bytes.
    """
    data: Dict[str, Any] = dict(payload)
    data["action"] = action
    data["timestamp"] = _to_millis(issued_at)
    if chain_id:
        data["chainId"] = chain_id
    return json.dumps(data, sort_keys=True, separators=(",", ":"))


def parse_envelope(signed_message: Union[str, bytes, Mapping[str, Any]]) -> ActionEnvelope:
    """
    Parse a signed message into an ActionEnvelope.

    Raises:
        EnvelopeError(MALFORMED) if the message is not a JSON object with a
        string ``action`` and a numeric ``timestamp`` (epoch milliseconds).
    """
    raw = ""
    if isinstance(signed_message, (bytes, bytearray)):
        try:
            signed_message = signed_message.decode("utf-8")
        except UnicodeDecodeError as e:
            raise EnvelopeError(EnvelopeError.MALFORMED, "Signed message is not UTF-8") from e

    if isinstance(signed_message, str):
        raw = signed_message
        try:
            data = json.loads(signed_message)
        except ValueError as e:
            raise EnvelopeError(EnvelopeError.MALFORMED, "Signed message is not valid JSON") from e
    else:
        data = signed_message

    if not isinstance(data, Mapping):
        raise EnvelopeError(EnvelopeError.MALFORMED, "Signed message must be a JSON object")

    action = data.get("action")
    if not isinstance(action, str) or not action:
        raise EnvelopeError(EnvelopeError.MALFORMED, "Signed message has no action")

    timestamp = data.get("timestamp")
    # bool is an int subclass; a boolean timestamp is never legitimate
    if isinstance(timestamp, bool) or not isinstance(timestamp, (int, float)):
        raise EnvelopeError(EnvelopeError.MALFORMED, "Signed message has no numeric timestamp")

    try:
        issued_at = _from_millis(timestamp)
    except (OverflowError, OSError, ValueError) as e:
        raise EnvelopeError(EnvelopeError.MALFORMED, "Signed message timestamp out of range") from e

    payload = {k: v for k, v in data.items() if k not in RESERVED_FIELDS}
    actor = payload.get(ACTOR_FIELDS.get(action, "actor"))

    return ActionEnvelope(
        action=action,
        payload=payload,
        actor_identity=actor if isinstance(actor, str) else None,
        issued_at=issued_at,
        raw=raw,
    )


def _exactly_equal(actual: Any, expected: Any) -> bool:
    # "1" != 1 and True != 1 for authorization purposes
    return type(actual) is type(expected) and actual == expected


def validate(
    signed_message: Union[str, bytes, Mapping[str, Any], ActionEnvelope],
    expected_action: str,
    expected_payload: Mapping[str, Any],
    now: datetime,
    max_age: timedelta = MAX_ENVELOPE_AGE,
) -> ActionEnvelope:
    """
    Check that a signed message authorizes ``expected_action`` with
    ``expected_payload`` at time ``now``.

    Returns:
        The parsed envelope.

    Raises:
        EnvelopeError with code MALFORMED, ACTION_MISMATCH,
        PAYLOAD_MISMATCH or EXPIRED.
    """
    if isinstance(signed_message, ActionEnvelope):
        envelope = signed_message
    else:
        envelope = parse_envelope(signed_message)

    if envelope.action != expected_action:
        raise EnvelopeError(
            EnvelopeError.ACTION_MISMATCH,
            "Signed action does not match request",
            {"expected": expected_action, "actual": envelope.action},
        )

    mismatched = [
        name for name, expected in expected_payload.items()
        if name not in envelope.payload or not _exactly_equal(envelope.payload[name], expected)
    ]
    if mismatched:
        raise EnvelopeError(
            EnvelopeError.PAYLOAD_MISMATCH,
            "Signed message data doesn't match request",
            {"fields": mismatched},
        )

    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)

    age = now - envelope.issued_at
    if age > max_age:
        raise EnvelopeError(
            EnvelopeError.EXPIRED,
            "Signature has expired. Please try again.",
            {"age_seconds": age.total_seconds()},
        )
    if -age > MAX_CLOCK_SKEW:
        raise EnvelopeError(
            EnvelopeError.EXPIRED,
            "Signature is dated in the future",
            {"age_seconds": age.total_seconds()},
        )

    return envelope


class SignatureVerifier:
    """
    Verify secp256k1 ECDSA signatures over signed messages.

    Signatures are hex-encoded raw ``r || s`` (64 bytes) over the SHA-256
    digest of the exact message bytes. Public keys are hex-encoded SEC1
    points, compressed or uncompressed.
    """

    def __init__(self, hashfunc=hashlib.sha256):
        self.hashfunc = hashfunc

    def verify(self, message: Union[str, bytes], signature_hex: str, public_key_hex: str) -> bool:
        """Return True iff ``signature_hex`` is valid for ``message``."""
        if isinstance(message, str):
            message = message.encode("utf-8")

        try:
            signature = bytes.fromhex(_strip_0x(signature_hex))
            key = VerifyingKey.from_string(
                bytes.fromhex(_strip_0x(public_key_hex)), curve=SECP256k1
            )
        except (ValueError, MalformedPointError):
            return False

        try:
            return key.verify(signature, message, hashfunc=self.hashfunc)
        except BadSignatureError:
            return False

    def require(self, message: Union[str, bytes], signature_hex: str, public_key_hex: str) -> None:
        """Raise EnvelopeError(BAD_SIGNATURE) unless the signature verifies."""
        if not self.verify(message, signature_hex, public_key_hex):
            raise EnvelopeError(
                EnvelopeError.BAD_SIGNATURE,
                "Signature does not match the claimed signer",
            )


def _strip_0x(value: str) -> str:
    return value[2:] if value.lower().startswith("0x") else value


def verify_signed_action(
    signed_message: Union[str, bytes],
    signature: Optional[str],
    expected_action: str,
    expected_payload: Mapping[str, Any],
    now: datetime,
    public_key: Optional[str] = None,
    verifier: Optional[SignatureVerifier] = None,
    max_age: timedelta = MAX_ENVELOPE_AGE,
) -> ActionEnvelope:
    """
    Full envelope check: content and freshness, then signature authenticity
    when the signer's public key is known.
    """
    envelope = validate(signed_message, expected_action, expected_payload, now, max_age)

    if public_key:
        if not signature:
            raise EnvelopeError(EnvelopeError.BAD_SIGNATURE, "Signature is missing")
        (verifier or SignatureVerifier()).require(signed_message, signature, public_key)

    return envelope

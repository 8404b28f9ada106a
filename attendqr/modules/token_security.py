"""
Token Security Module - QR Check-in Attendance Service

This module defines the attendance token carried inside a check-in QR code and
the primitives shared by the generator and the validator: the HMAC signature,
JSON wire encoding, and structural decoding of scanned payloads.

Wire format (JSON object):
    type       - always "attendance"
    courseId   - course the token authorizes check-in for
    sessionId  - scheduled class session of that course
    timestamp  - issue time, epoch milliseconds
    expiresAt  - expiry time, epoch milliseconds
    signature  - hex HMAC-SHA256 over the claimed fields
    location   - {latitude, longitude, accuracy} of the classroom, or null
"""

import hashlib
import hmac
import json
import math
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

TOKEN_TYPE_ATTENDANCE = 'attendance'

REQUIRED_WIRE_FIELDS = ('type', 'courseId', 'timestamp', 'expiresAt', 'signature', 'sessionId')


class TokenFormatError(ValueError):
    """Base class for payloads that cannot be turned into a token."""

    error_type = 'format_error'


class TokenDecodeError(TokenFormatError):
    """Payload is not a well-formed token object."""

    error_type = 'decode_error'


class TokenMissingFieldsError(TokenFormatError):
    """One or more required token fields are absent."""

    error_type = 'missing_fields'

    def __init__(self, missing_fields: List[str]):
        self.missing_fields = missing_fields
        super().__init__(f"Missing required fields: {', '.join(missing_fields)}")


class TokenTypeError(TokenFormatError):
    """Token is not an attendance token."""

    error_type = 'invalid_type'


@dataclass(frozen=True)
class Location:
    """A geographic point with optional accuracy radius in meters."""
    latitude: float
    longitude: float
    accuracy: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'latitude': self.latitude,
            'longitude': self.longitude,
            'accuracy': self.accuracy
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional['Location']:
        if not isinstance(data, dict):
            return None
        try:
            accuracy = data.get('accuracy')
            location = cls(
                latitude=float(data['latitude']),
                longitude=float(data['longitude']),
                accuracy=float(accuracy) if accuracy is not None else None
            )
        except (KeyError, TypeError, ValueError, OverflowError):
            return None
        if not (math.isfinite(location.latitude) and math.isfinite(location.longitude)):
            return None
        return location


@dataclass(frozen=True)
class AttendanceToken:
    """Signed, time-boxed check-in token for one course session."""
    course_id: str
    session_id: str
    issued_at: int
    expires_at: int
    signature: str
    location: Optional[Location] = None
    token_type: str = TOKEN_TYPE_ATTENDANCE

    def to_dict(self) -> Dict[str, Any]:
        return {
            'type': self.token_type,
            'courseId': self.course_id,
            'timestamp': self.issued_at,
            'expiresAt': self.expires_at,
            'signature': self.signature,
            'location': self.location.to_dict() if self.location else None,
            'sessionId': self.session_id
        }


def current_time_ms() -> int:
    """Current wall clock time in epoch milliseconds."""
    return int(time.time() * 1000)


def utc_now() -> datetime:
    """Current UTC time as a naive datetime, matching stored ISO timestamps."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _signing_message(course_id: str, session_id: str, issued_at: int, expires_at: int) -> bytes:
    return f"{course_id}|{session_id}|{int(issued_at)}|{int(expires_at)}".encode('utf-8')


def sign_token(course_id: str, session_id: str, issued_at: int,
               expires_at: int, secret_key: str) -> str:
    """
    Compute the signature for a token's claimed fields.

    Args:
        course_id (str): Course identifier
        session_id (str): Class session identifier
        issued_at (int): Issue time in epoch milliseconds
        expires_at (int): Expiry time in epoch milliseconds
        secret_key (str): Server-held signing secret

    Returns:
        str: Hex encoded HMAC-SHA256 digest
    """
    return hmac.new(
        secret_key.encode('utf-8'),
        _signing_message(course_id, session_id, issued_at, expires_at),
        hashlib.sha256
    ).hexdigest()


def verify_signature(token: AttendanceToken, secret_key: str) -> bool:
    """Recompute the token signature and compare in constant time."""
    expected = sign_token(
        token.course_id, token.session_id, token.issued_at, token.expires_at, secret_key
    )
    # compare_digest only accepts ASCII str; scanned signatures are untrusted
    return hmac.compare_digest(expected.encode('utf-8'), str(token.signature).encode('utf-8'))


def encode_token(token: AttendanceToken) -> str:
    """Serialize a token to the JSON string embedded in the QR code."""
    return json.dumps(token.to_dict(), separators=(',', ':'))


def _reject_constant(name: str):
    raise ValueError(f'{name} is not a valid JSON value')


def _wire_millis(value: Any) -> int:
    # bool is an int subclass; 1e400 parses to float infinity
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    if isinstance(value, float) and math.isfinite(value):
        return int(value)
    raise TokenDecodeError('Token timestamps must be finite numbers')


def decode_token(raw: str) -> AttendanceToken:
    """
    Parse a scanned payload into an AttendanceToken.

    Args:
        raw (str): Raw string read from the QR code

    Returns:
        AttendanceToken: Decoded token

    Raises:
        TokenDecodeError: Payload is not a JSON object or has malformed values
        TokenMissingFieldsError: A required field is absent
        TokenTypeError: The discriminator is not the attendance marker
    """
    if not isinstance(raw, (str, bytes)) or not raw:
        raise TokenDecodeError('Empty QR code payload')

    try:
        data = json.loads(raw, parse_constant=_reject_constant)
    except ValueError as e:
        raise TokenDecodeError(f'Invalid QR code format: {e}') from e

    if not isinstance(data, dict):
        raise TokenDecodeError('QR code payload is not an object')

    missing = [field for field in REQUIRED_WIRE_FIELDS
               if field not in data or data[field] is None or data[field] == '']
    if missing:
        raise TokenMissingFieldsError(missing)

    if data['type'] != TOKEN_TYPE_ATTENDANCE:
        raise TokenTypeError(f"Unsupported QR code type: {data['type']}")

    issued_at = _wire_millis(data['timestamp'])
    expires_at = _wire_millis(data['expiresAt'])

    return AttendanceToken(
        course_id=str(data['courseId']),
        session_id=str(data['sessionId']),
        issued_at=issued_at,
        expires_at=expires_at,
        signature=str(data['signature']),
        location=Location.from_dict(data.get('location')),
        token_type=data['type']
    )

"""
QR Validator Module - QR Check-in Attendance Service

This module runs a scanned attendance QR code through the ordered validation
pipeline. Each stage either fails fast with a specific, actionable message or
falls through to the next one:

    Decoding -> TimeCheck -> SignatureCheck -> CourseLookup -> LocationCheck -> Success

Decoding failures are terminal and carry no per-check breakdown. Every later
stage records its outcome in ValidationDetails so callers can show per-check
status. The location stage is skipped, not failed, whenever there is no device
fix, no classroom coordinates, or an upstream location-service error.

Nothing in the pipeline raises; all outcomes are returned as ValidationResult.
"""

import logging
import math
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Mapping, Optional, Union

from attendqr.modules.location_utils import (
    DEFAULT_GEOFENCE_RADIUS_METERS, calculate_distance, format_distance, is_within_geofence
)
from attendqr.modules.token_security import (
    AttendanceToken, Location, TokenFormatError, TokenMissingFieldsError,
    current_time_ms, decode_token, verify_signature
)

CourseCollection = Union[Iterable[Dict[str, Any]], Mapping[str, Dict[str, Any]]]


@dataclass
class ValidationDetails:
    """Independent pass/fail state of each check performed."""
    time_valid: bool = False
    signature_valid: bool = False
    course_found: bool = False
    location_valid: bool = False
    location_skipped: bool = False
    distance_meters: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'timeValid': self.time_valid,
            'signatureValid': self.signature_valid,
            'courseFound': self.course_found,
            'locationValid': self.location_valid,
            'locationSkipped': self.location_skipped,
            'distanceMeters': (round(self.distance_meters, 2)
                               if self.distance_meters is not None else None)
        }


@dataclass
class ValidationResult:
    """Outcome of running a scanned payload through the pipeline."""
    success: bool
    message: str
    details: Optional[ValidationDetails] = None
    error_type: Optional[str] = None
    token: Optional[AttendanceToken] = None
    course: Optional[Dict[str, Any]] = field(default=None, repr=False)

    def to_dict(self) -> Dict[str, Any]:
        result = {
            'success': self.success,
            'message': self.message,
            'error_type': self.error_type,
            'details': self.details.to_dict() if self.details else None
        }
        if self.token:
            result['course_id'] = self.token.course_id
            result['session_id'] = self.token.session_id
        if self.course:
            result['course_name'] = self.course.get('name')
        return result


class QRValidator:
    """
    Student-side validator for attendance QR codes.
    Verifies time window, signature, course and geofence in that order.
    """

    def __init__(self, secret_key: str,
                 geofence_radius_meters: float = DEFAULT_GEOFENCE_RADIUS_METERS):
        """
        Initialize the validator.

        Args:
            secret_key (str): Signing secret shared with the generator
            geofence_radius_meters (float): Maximum allowed distance to the classroom
        """
        if not secret_key:
            raise ValueError('A signing secret is required')

        self.secret_key = secret_key
        self.geofence_radius_meters = geofence_radius_meters
        self.logger = logging.getLogger(__name__)

    def validate(self, qr_data: str, courses: CourseCollection,
                 current_location: Optional[Location] = None,
                 location_error: Optional[str] = None,
                 now: Optional[int] = None) -> ValidationResult:
        """
        Validate a scanned QR payload.

        Args:
            qr_data (str): Raw string read from the QR code
            courses: Locally cached courses, as a list of course dicts or a mapping by id
            current_location (Location): Best-known device location, if any
            location_error (str): Upstream location-service error, if one occurred
            now (int): Current time in epoch milliseconds (defaults to wall clock)

        Returns:
            ValidationResult: Structured outcome with per-check breakdown
        """
        now = current_time_ms() if now is None else now

        # Stage 0: decode and structural validation
        try:
            token = decode_token(qr_data)
        except TokenMissingFieldsError as e:
            self.logger.warning(f"QR code rejected, missing fields: {e.missing_fields}")
            return ValidationResult(
                success=False,
                message=f"Invalid QR code: missing {', '.join(e.missing_fields)}. "
                        "Please scan a valid attendance QR code.",
                error_type=e.error_type
            )
        except TokenFormatError as e:
            self.logger.warning(f"QR code rejected at decode: {str(e)}")
            return ValidationResult(
                success=False,
                message='Invalid QR code format. Please scan a valid attendance QR code.',
                error_type=e.error_type
            )

        details = ValidationDetails()

        # Stage 1: time window
        if now < token.issued_at:
            minutes = math.ceil((token.issued_at - now) / 60000)
            self.logger.info(f"QR code for course {token.course_id} not yet valid")
            return ValidationResult(
                success=False,
                message=f"QR code is not valid yet. It becomes active in {minutes} "
                        f"minute{'s' if minutes != 1 else ''}. "
                        "Please wait for your instructor to display the code.",
                details=details,
                error_type='not_yet_valid',
                token=token
            )

        if now > token.expires_at:
            minutes = math.ceil((now - token.expires_at) / 60000)
            self.logger.info(f"Expired QR code scanned for course {token.course_id}")
            return ValidationResult(
                success=False,
                message=f"QR code expired {minutes} minute{'s' if minutes != 1 else ''} ago. "
                        "Please ask your instructor for a new code.",
                details=details,
                error_type='expired',
                token=token
            )

        details.time_valid = True

        # Stage 2: signature
        if not verify_signature(token, self.secret_key):
            self.logger.warning(f"Signature mismatch on QR code for course {token.course_id}")
            return ValidationResult(
                success=False,
                message='Invalid QR code signature. This code may have been tampered with '
                        'or did not come from your instructor.',
                details=details,
                error_type='invalid_signature',
                token=token
            )

        details.signature_valid = True

        # Stage 3: course lookup
        course = self._find_course(courses, token.course_id)
        if not course:
            self.logger.info(f"QR code references unknown course {token.course_id}")
            return ValidationResult(
                success=False,
                message='Course not found. Please contact your instructor to verify '
                        'the course for this QR code.',
                details=details,
                error_type='course_not_found',
                token=token
            )

        details.course_found = True

        # Stage 4: geofence, skipped when any precondition is missing
        classroom = self._classroom_location(course)
        if current_location is None or classroom is None or location_error:
            details.location_valid = True
            details.location_skipped = True
        else:
            distance = calculate_distance(
                current_location.latitude, current_location.longitude,
                classroom.latitude, classroom.longitude
            )
            details.distance_meters = distance

            if not is_within_geofence(distance, self.geofence_radius_meters):
                self.logger.info(
                    f"Geofence check failed for course {token.course_id}: {distance:.1f}m"
                )
                return ValidationResult(
                    success=False,
                    message=f"You are {format_distance(distance)} away from the classroom. "
                            f"You must be within {self._format_radius()} meters to check in.",
                    details=details,
                    error_type='too_far',
                    token=token,
                    course=course
                )

            details.location_valid = True

        course_name = course.get('name') or course.get('code') or token.course_id
        message = f"Attendance verified for {course_name}."
        if details.location_skipped:
            message += ' Location verification was skipped.'

        self.logger.info(f"QR code validated for course {token.course_id}, session {token.session_id}")
        return ValidationResult(
            success=True,
            message=message,
            details=details,
            token=token,
            course=course
        )

    def get_time_remaining(self, token: AttendanceToken, now: Optional[int] = None) -> int:
        """Milliseconds until the token expires, never negative."""
        now = current_time_ms() if now is None else now
        return max(0, token.expires_at - now)

    def format_time_remaining(self, token: AttendanceToken, now: Optional[int] = None) -> str:
        """Remaining validity formatted as m:ss."""
        remaining = self.get_time_remaining(token, now)
        minutes = remaining // 60000
        seconds = (remaining % 60000) // 1000
        return f"{minutes}:{seconds:02d}"

    def _find_course(self, courses: CourseCollection, course_id: str) -> Optional[Dict[str, Any]]:
        if not courses:
            return None
        if isinstance(courses, Mapping):
            return courses.get(course_id)
        for course in courses:
            if str(course.get('id')) == course_id:
                return course
        return None

    @staticmethod
    def _classroom_location(course: Dict[str, Any]) -> Optional[Location]:
        latitude = course.get('latitude')
        longitude = course.get('longitude')
        if latitude is None or longitude is None:
            return None
        return Location(latitude=float(latitude), longitude=float(longitude))

    def _format_radius(self) -> str:
        radius = self.geofence_radius_meters
        return str(int(radius)) if float(radius).is_integer() else str(radius)

"""
Scan Controller Module - QR Check-in Attendance Service

This module drives a student's check-in from the scanning device. It bridges
the camera/QR decoder and the geolocation sensor to the QR validator and the
attendance store, and produces the feedback shown to the student.

One controller handles one scanning screen. Only the first scan is processed;
after a failure the student must explicitly choose to scan again. Location is
acquired in the background with a retry ladder of decreasing accuracy, and is
abandoned (location check skipped) when it cannot be obtained.

Everything runs on a single asyncio event loop. Background work (location
retries, the delayed navigation after success) lives in tasks owned by the
controller and is cancelled by dispose(). Blocking store calls run in worker
threads so the loop keeps serving the camera and location tasks.
"""

import asyncio
import enum
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Protocol

from attendqr.modules.attendance_manager import (
    AttendanceManager, AttendanceStoreError, UnknownSessionError
)
from attendqr.modules.qr_validator import CourseCollection, QRValidator, ValidationResult
from attendqr.modules.token_security import Location, current_time_ms

DEFAULT_LOCATION_MAX_RETRIES = 3
DEFAULT_LOCATION_RETRY_DELAY = 2.0
DEFAULT_NAVIGATION_DELAY = 2.5


class ScanState(enum.Enum):
    IDLE = 'idle'
    SCANNING = 'scanning'
    VALIDATING = 'validating'
    DONE = 'done'


ALLOWED_TRANSITIONS = {
    ScanState.IDLE: {ScanState.SCANNING},
    ScanState.SCANNING: {ScanState.VALIDATING},
    ScanState.VALIDATING: {ScanState.DONE},
    ScanState.DONE: {ScanState.SCANNING},
}


class InvalidScanTransition(RuntimeError):
    """Raised when the scan state machine is asked for an illegal move."""

    def __init__(self, current: ScanState, target: ScanState):
        self.current = current
        self.target = target
        super().__init__(f"Cannot move scan state from {current.value} to {target.value}")


class LocationAccuracy(enum.Enum):
    """Accuracy levels tried in order by the location retry ladder."""
    HIGH = 'high'
    BALANCED = 'balanced'
    LOW = 'low'
    LOWEST = 'lowest'


class LocationError(Exception):
    """Geolocation failure reported by the device."""

    PERMISSION_DENIED = 'permission_denied'
    TIMEOUT = 'timeout'
    POSITION_UNAVAILABLE = 'position_unavailable'

    def __init__(self, reason: str, message: str = None):
        self.reason = reason
        super().__init__(message or reason)


class Geolocation(Protocol):
    async def request_permission(self) -> bool:
        ...

    async def get_current_position(self, accuracy: LocationAccuracy) -> Location:
        ...


class CameraPermissions(Protocol):
    async def request_permission(self) -> bool:
        ...


class Haptics(Protocol):
    def warning(self) -> None:
        ...

    def success(self) -> None:
        ...

    def error(self) -> None:
        ...


OUTCOME_SUCCESS = 'success'
OUTCOME_INVALID = 'invalid'
OUTCOME_STORE_ERROR = 'store_error'
OUTCOME_PROCESSING_ERROR = 'processing_error'


@dataclass
class ScanOutcome:
    """What the student sees after a scan was processed."""
    kind: str
    message: str
    validation: ValidationResult
    attendance: Optional[Dict[str, Any]] = None
    error_type: Optional[str] = None
    warnings: List[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.kind == OUTCOME_SUCCESS

    def to_dict(self) -> Dict[str, Any]:
        result = self.validation.to_dict()
        result.update({
            'success': self.success,
            'kind': self.kind,
            'message': self.message,
            'error_type': self.error_type,
            'warnings': list(self.warnings)
        })
        if self.kind == OUTCOME_STORE_ERROR:
            result['token_valid'] = True
        if self.attendance is not None:
            result['attendance'] = self.attendance
        return result


class ScanController:
    """
    Student-side orchestration of a single QR check-in.
    """

    def __init__(self, validator: QRValidator, attendance_manager: AttendanceManager,
                 student_id: int, geolocation: Geolocation,
                 camera: CameraPermissions, haptics: Haptics,
                 navigator: Callable[[ScanOutcome], Any],
                 courses: Optional[CourseCollection] = None,
                 max_location_retries: int = DEFAULT_LOCATION_MAX_RETRIES,
                 location_retry_delay: float = DEFAULT_LOCATION_RETRY_DELAY,
                 navigation_delay: float = DEFAULT_NAVIGATION_DELAY,
                 clock: Callable[[], int] = current_time_ms):
        """
        Initialize the scan controller.

        Args:
            validator (QRValidator): Validator for scanned payloads
            attendance_manager (AttendanceManager): Store for attendance records
            student_id (int): Student checking in
            geolocation (Geolocation): Device location service
            camera (CameraPermissions): Camera permission service
            haptics (Haptics): Haptic feedback
            navigator: Called with the outcome once the success message was shown
            courses: Cached course list; fetched from the store when omitted
            max_location_retries (int): Retries after the first location attempt
            location_retry_delay (float): Seconds between location attempts
            navigation_delay (float): Seconds the success message stays on screen
            clock: Current time in epoch milliseconds
        """
        self.validator = validator
        self.attendance = attendance_manager
        self.student_id = student_id
        self.geolocation = geolocation
        self.camera = camera
        self.haptics = haptics
        self.navigator = navigator
        self.courses = courses
        self.max_location_retries = max_location_retries
        self.location_retry_delay = location_retry_delay
        self.navigation_delay = navigation_delay
        self.clock = clock
        self.logger = logging.getLogger(__name__)

        self.state = ScanState.IDLE
        self.permission_prompt: Optional[str] = None
        self.location: Optional[Location] = None
        self.location_error: Optional[str] = None
        self.location_attempts = 0
        self.warnings: List[str] = []
        self.last_outcome: Optional[ScanOutcome] = None

        self.location_task: Optional[asyncio.Task] = None
        self.navigation_task: Optional[asyncio.Task] = None
        self._disposed = False

    def _transition(self, target: ScanState):
        if target not in ALLOWED_TRANSITIONS[self.state]:
            raise InvalidScanTransition(self.state, target)
        self.logger.debug(f"Scan state {self.state.value} -> {target.value}")
        self.state = target

    async def start(self) -> bool:
        """
        Request permissions, begin location acquisition and enable scanning.

        Returns:
            bool: True when the camera is available and scanning started
        """
        if self._disposed:
            raise RuntimeError('Scan controller has been disposed')
        if self.state != ScanState.IDLE:
            raise InvalidScanTransition(self.state, ScanState.SCANNING)

        if not await self.camera.request_permission():
            self.permission_prompt = 'camera'
            self.logger.info('Camera permission not granted, showing permission request')
            return False

        self.permission_prompt = None
        if await self.geolocation.request_permission():
            self.location_task = asyncio.create_task(self._acquire_location())
        else:
            self.permission_prompt = 'location'
            self._abandon_location(LocationError.PERMISSION_DENIED)

        self._transition(ScanState.SCANNING)
        return True

    async def _acquire_location(self) -> Optional[Location]:
        """Try each accuracy level in turn until a fix is obtained or retries run out."""
        levels = list(LocationAccuracy)
        retries = 0
        while True:
            accuracy = levels[min(retries, len(levels) - 1)]
            self.location_attempts += 1
            try:
                position = await self.geolocation.get_current_position(accuracy)
            except LocationError as e:
                self.logger.info(f"Location attempt at {accuracy.value} accuracy failed: {e.reason}")
                if e.reason == LocationError.PERMISSION_DENIED:
                    self.permission_prompt = 'location'
                    self._abandon_location(e.reason)
                    return None
                if retries >= self.max_location_retries:
                    self._abandon_location(e.reason)
                    return None
                retries += 1
                await asyncio.sleep(self.location_retry_delay)
                continue

            self.location = position
            self.location_error = None
            self.logger.info(f"Location acquired at {accuracy.value} accuracy")
            return position

    def _abandon_location(self, reason: str):
        self.location = None
        self.location_error = reason
        warning = ('Location permission was not granted. Attendance will be recorded '
                   'without location verification.'
                   if reason == LocationError.PERMISSION_DENIED else
                   'Could not determine your location. Attendance will be recorded '
                   'without location verification.')
        self.warnings.append(warning)
        self.logger.warning(f"Location abandoned for this scan session: {reason}")

    async def handle_scan(self, data: str) -> Optional[ScanOutcome]:
        """
        Process a scanned payload.

        Scans arriving while a previous scan is being processed, or after one
        has completed, are ignored.

        Returns:
            ScanOutcome: Result of the scan, or None when the scan was ignored
        """
        if self.state != ScanState.SCANNING:
            self.logger.debug(f"Ignoring scan in state {self.state.value}")
            return None
        self._transition(ScanState.VALIDATING)

        self.haptics.warning()

        try:
            outcome = await self._process(data)
        except Exception as e:
            # Unexpected failure; the token was not confirmed valid, never leave VALIDATING
            self.logger.exception(f"Scan processing failed: {str(e)}")
            outcome = ScanOutcome(
                kind=OUTCOME_PROCESSING_ERROR,
                message='Something went wrong while checking you in. Please try again.',
                validation=ValidationResult(success=False, message=str(e),
                                            error_type=OUTCOME_PROCESSING_ERROR),
                error_type=OUTCOME_PROCESSING_ERROR
            )

        if self._disposed:
            self.logger.info('Scan finished after the controller was disposed')
            return outcome

        outcome.warnings = list(self.warnings)
        self.last_outcome = outcome
        self._transition(ScanState.DONE)

        if outcome.success:
            self.haptics.success()
            self.navigation_task = asyncio.create_task(self._navigate_after_delay(outcome))
        else:
            self.haptics.error()
        return outcome

    async def _process(self, data: str) -> ScanOutcome:
        # Store calls are blocking sqlite work; run them off the event loop
        courses = self.courses
        if courses is None:
            courses = await asyncio.to_thread(
                self.attendance.courses.get_courses_for_student, self.student_id
            )

        validation = self.validator.validate(
            data, courses,
            current_location=self.location,
            location_error=self.location_error,
            now=self.clock()
        )
        if not validation.success:
            return ScanOutcome(
                kind=OUTCOME_INVALID,
                message=validation.message,
                validation=validation,
                error_type=validation.error_type
            )

        try:
            record = await asyncio.to_thread(
                self.attendance.record_qr_check_in,
                validation.token, self.student_id, self.location
            )
        except UnknownSessionError as e:
            return ScanOutcome(
                kind=OUTCOME_INVALID,
                message=str(e),
                validation=validation,
                error_type=e.error_type
            )
        except AttendanceStoreError as e:
            self.logger.warning(f"Valid QR code could not be stored for student {self.student_id}: {str(e)}")
            return ScanOutcome(
                kind=OUTCOME_STORE_ERROR,
                message=(str(e) if e.error_type == 'already_checked_in' else
                         'Your QR code was valid but attendance could not be saved. '
                         'Please try again.'),
                validation=validation,
                error_type=e.error_type
            )

        return ScanOutcome(
            kind=OUTCOME_SUCCESS,
            message=validation.message,
            validation=validation,
            attendance=record
        )

    async def _navigate_after_delay(self, outcome: ScanOutcome):
        await asyncio.sleep(self.navigation_delay)
        self.navigator(outcome)

    def scan_again(self):
        """Re-arm scanning after a completed scan. Only explicit user action calls this."""
        if self.state != ScanState.DONE:
            raise InvalidScanTransition(self.state, ScanState.SCANNING)
        self._transition(ScanState.SCANNING)
        if self.navigation_task is not None and not self.navigation_task.done():
            self.navigation_task.cancel()
        self.last_outcome = None
        self.logger.info(f"Student {self.student_id} chose to scan again")

    def dispose(self):
        """Cancel background work. The controller cannot be restarted afterwards."""
        self._disposed = True
        for task in (self.location_task, self.navigation_task):
            if task is not None and not task.done():
                task.cancel()
        self.state = ScanState.IDLE

import asyncio
import json

import pytest

from attendqr.modules.attendance_manager import AttendanceStoreError
from attendqr.modules.qr_generator import QRGenerator
from attendqr.modules.scan_controller import (
    InvalidScanTransition, LocationAccuracy, LocationError, ScanController, ScanState
)
from attendqr.modules.token_security import Location, encode_token

from conftest import CLASSROOM, NOW_MS, SECRET, meters_north


class FakeGeolocation:
    def __init__(self, outcomes=None, permission=True):
        # Each outcome is a Location to return or a LocationError to raise
        self.outcomes = list(outcomes or [])
        self.permission = permission
        self.requested = []

    async def request_permission(self):
        return self.permission

    async def get_current_position(self, accuracy):
        self.requested.append(accuracy)
        outcome = self.outcomes.pop(0) if self.outcomes else LocationError(LocationError.TIMEOUT)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class HangingGeolocation(FakeGeolocation):
    async def get_current_position(self, accuracy):
        self.requested.append(accuracy)
        await asyncio.Event().wait()


class FakeCamera:
    def __init__(self, granted=True):
        self.granted = granted

    async def request_permission(self):
        return self.granted


class FakeHaptics:
    def __init__(self):
        self.events = []

    def warning(self):
        self.events.append('warning')

    def success(self):
        self.events.append('success')

    def error(self):
        self.events.append('error')


@pytest.fixture
def qr_data():
    return encode_token(QRGenerator(SECRET).generate_attendance_token('CS101', 'CS101-s1', now=NOW_MS))


def nearby(meters=10):
    return Location(*meters_north(*CLASSROOM, meters), accuracy=8.0)


def make_controller(validator, attendance, classroom, geolocation=None, camera=None,
                    **kwargs):
    navigated = []
    controller = ScanController(
        validator, attendance, classroom['student_id'],
        geolocation=geolocation or FakeGeolocation([nearby()]),
        camera=camera or FakeCamera(),
        haptics=FakeHaptics(),
        navigator=navigated.append,
        location_retry_delay=0,
        navigation_delay=0,
        clock=lambda: NOW_MS,
        **kwargs
    )
    return controller, navigated


async def start_and_locate(controller):
    await controller.start()
    if controller.location_task is not None:
        await controller.location_task


def test_successful_scan_records_attendance_and_navigates(validator, attendance, classroom, qr_data):
    controller, navigated = make_controller(validator, attendance, classroom)

    async def scenario():
        await start_and_locate(controller)
        outcome = await controller.handle_scan(qr_data)
        await controller.navigation_task
        return outcome

    outcome = asyncio.run(scenario())

    assert outcome.kind == 'success'
    assert outcome.validation.details.location_valid
    assert not outcome.validation.details.location_skipped
    assert outcome.attendance['method'] == 'QR'
    assert outcome.attendance['latitude'] == pytest.approx(nearby().latitude)
    assert controller.haptics.events == ['warning', 'success']
    assert controller.state == ScanState.DONE
    assert navigated == [outcome]
    assert attendance.has_attendance('CS101-s1', classroom['student_id'])


def test_second_scan_is_ignored(validator, attendance, classroom, qr_data):
    controller, _ = make_controller(validator, attendance, classroom)

    async def scenario():
        await start_and_locate(controller)
        first = await controller.handle_scan(qr_data)
        second = await controller.handle_scan(qr_data)
        return first, second

    first, second = asyncio.run(scenario())

    assert first.success
    assert second is None
    assert controller.haptics.events == ['warning', 'success']


def test_concurrent_scans_enter_pipeline_once(validator, attendance, classroom, qr_data):
    controller, _ = make_controller(validator, attendance, classroom)

    async def scenario():
        await start_and_locate(controller)
        return await asyncio.gather(controller.handle_scan(qr_data),
                                    controller.handle_scan(qr_data))

    outcomes = asyncio.run(scenario())

    assert sum(outcome is not None for outcome in outcomes) == 1
    assert controller.haptics.events.count('warning') == 1


def test_failure_waits_for_scan_again(validator, attendance, classroom, qr_data):
    controller, navigated = make_controller(validator, attendance, classroom)

    async def scenario():
        await start_and_locate(controller)
        failed = await controller.handle_scan('garbage')
        ignored = await controller.handle_scan(qr_data)
        controller.scan_again()
        retried = await controller.handle_scan(qr_data)
        await controller.navigation_task
        return failed, ignored, retried

    failed, ignored, retried = asyncio.run(scenario())

    assert failed.kind == 'invalid'
    assert failed.error_type == 'decode_error'
    assert ignored is None
    assert retried.success
    assert controller.haptics.events == ['warning', 'error', 'warning', 'success']
    assert navigated == [retried]


def test_too_far_is_an_invalid_outcome(validator, attendance, classroom, qr_data):
    controller, navigated = make_controller(
        validator, attendance, classroom, geolocation=FakeGeolocation([nearby(500)])
    )

    async def scenario():
        await start_and_locate(controller)
        return await controller.handle_scan(qr_data)

    outcome = asyncio.run(scenario())

    assert outcome.kind == 'invalid'
    assert outcome.error_type == 'too_far'
    assert '500m' in outcome.message
    assert navigated == []
    assert not attendance.has_attendance('CS101-s1', classroom['student_id'])


def test_location_retry_ladder_lowers_accuracy(validator, attendance, classroom):
    timeout = LocationError(LocationError.TIMEOUT)
    geolocation = FakeGeolocation([timeout, timeout, nearby()])
    controller, _ = make_controller(validator, attendance, classroom, geolocation=geolocation)

    asyncio.run(start_and_locate(controller))

    assert geolocation.requested == [LocationAccuracy.HIGH, LocationAccuracy.BALANCED,
                                     LocationAccuracy.LOW]
    assert controller.location == nearby()
    assert controller.location_error is None
    assert controller.warnings == []


def test_location_abandoned_after_three_retries(validator, attendance, classroom, qr_data):
    unavailable = LocationError(LocationError.POSITION_UNAVAILABLE)
    geolocation = FakeGeolocation([unavailable] * 10)
    controller, _ = make_controller(validator, attendance, classroom, geolocation=geolocation)

    async def scenario():
        await start_and_locate(controller)
        return await controller.handle_scan(qr_data)

    outcome = asyncio.run(scenario())

    assert geolocation.requested == list(LocationAccuracy)
    assert controller.location_attempts == 4
    assert controller.location_error == 'position_unavailable'
    assert outcome.success
    assert outcome.validation.details.location_skipped
    assert outcome.attendance['latitude'] is None
    assert len(outcome.warnings) == 1


def test_location_permission_denied_still_scans(validator, attendance, classroom, qr_data):
    geolocation = FakeGeolocation(permission=False)
    controller, _ = make_controller(validator, attendance, classroom, geolocation=geolocation)

    async def scenario():
        started = await controller.start()
        outcome = await controller.handle_scan(qr_data)
        return started, outcome

    started, outcome = asyncio.run(scenario())

    assert started
    assert controller.permission_prompt == 'location'
    assert controller.location_task is None
    assert geolocation.requested == []
    assert outcome.success
    assert outcome.validation.details.location_skipped


def test_camera_permission_missing_shows_prompt(validator, attendance, classroom, qr_data):
    controller, _ = make_controller(validator, attendance, classroom, camera=FakeCamera(False))

    async def scenario():
        started = await controller.start()
        outcome = await controller.handle_scan(qr_data)
        return started, outcome

    started, outcome = asyncio.run(scenario())

    assert not started
    assert controller.permission_prompt == 'camera'
    assert controller.state == ScanState.IDLE
    assert outcome is None


def test_duplicate_check_in_is_a_store_error(validator, attendance, classroom, qr_data):
    attendance.record_attendance('CS101-s1', classroom['student_id'], 'manual')
    controller, navigated = make_controller(validator, attendance, classroom)

    async def scenario():
        await start_and_locate(controller)
        return await controller.handle_scan(qr_data)

    outcome = asyncio.run(scenario())

    assert outcome.kind == 'store_error'
    assert outcome.error_type == 'already_checked_in'
    assert outcome.validation.success
    assert outcome.to_dict()['token_valid'] is True
    assert controller.haptics.events == ['warning', 'error']
    assert navigated == []


def test_database_failure_is_a_store_error(validator, attendance, classroom, qr_data, monkeypatch):
    def broken_store(*args, **kwargs):
        raise AttendanceStoreError('database is locked')

    monkeypatch.setattr(attendance, 'record_attendance', broken_store)
    controller, _ = make_controller(validator, attendance, classroom)

    async def scenario():
        await start_and_locate(controller)
        return await controller.handle_scan(qr_data)

    outcome = asyncio.run(scenario())

    assert outcome.kind == 'store_error'
    assert outcome.error_type == 'store_error'
    assert 'could not be saved' in outcome.message


def test_dispose_cancels_pending_location_retries(validator, attendance, classroom):
    geolocation = HangingGeolocation()
    controller, _ = make_controller(validator, attendance, classroom, geolocation=geolocation)

    async def scenario():
        await controller.start()
        await asyncio.sleep(0)
        task = controller.location_task
        controller.dispose()
        with pytest.raises(asyncio.CancelledError):
            await task
        return task

    task = asyncio.run(scenario())

    assert task.cancelled()
    assert controller.state == ScanState.IDLE


def test_dispose_cancels_pending_navigation(validator, attendance, classroom, qr_data):
    controller, navigated = make_controller(validator, attendance, classroom)
    controller.navigation_delay = 60

    async def scenario():
        await start_and_locate(controller)
        await controller.handle_scan(qr_data)
        controller.dispose()
        await asyncio.sleep(0)
        return controller.navigation_task

    task = asyncio.run(scenario())

    assert task.cancelled()
    assert navigated == []


def test_scan_again_requires_completed_scan(validator, attendance, classroom):
    controller, _ = make_controller(validator, attendance, classroom)
    with pytest.raises(InvalidScanTransition):
        controller.scan_again()


def test_uses_supplied_course_list(validator, attendance, classroom, qr_data):
    controller, _ = make_controller(validator, attendance, classroom, courses=[])

    async def scenario():
        await start_and_locate(controller)
        return await controller.handle_scan(qr_data)

    outcome = asyncio.run(scenario())
    assert outcome.error_type == 'course_not_found'


def test_non_ascii_signature_is_an_invalid_outcome(validator, attendance, classroom, qr_data):
    wire = json.loads(qr_data)
    wire['signature'] = 'tamperedé'
    controller, _ = make_controller(validator, attendance, classroom)

    async def scenario():
        await start_and_locate(controller)
        return await controller.handle_scan(json.dumps(wire))

    outcome = asyncio.run(scenario())

    assert outcome.kind == 'invalid'
    assert outcome.error_type == 'invalid_signature'
    assert 'token_valid' not in outcome.to_dict()


def test_unexpected_failure_is_not_reported_as_valid_token(validator, attendance, classroom,
                                                           qr_data, monkeypatch):
    def broken_validator(*args, **kwargs):
        raise RuntimeError('decoder crashed')

    monkeypatch.setattr(validator, 'validate', broken_validator)
    controller, navigated = make_controller(validator, attendance, classroom)

    async def scenario():
        await start_and_locate(controller)
        return await controller.handle_scan(qr_data)

    outcome = asyncio.run(scenario())

    assert outcome.kind == 'processing_error'
    assert outcome.error_type == 'processing_error'
    assert 'token_valid' not in outcome.to_dict()
    assert controller.state == ScanState.DONE
    assert controller.haptics.events == ['warning', 'error']
    assert navigated == []


def test_session_of_another_course_is_rejected(validator, attendance, courses, classroom):
    courses.create_course('MATH200', 'Linear Algebra', course_id='MATH200')
    courses.create_session('MATH200', '2025-01-15', '09:00:00', '10:00:00', session_id='MATH-s1')
    token = QRGenerator(SECRET).generate_attendance_token('CS101', 'MATH-s1', now=NOW_MS)
    controller, _ = make_controller(validator, attendance, classroom)

    async def scenario():
        await start_and_locate(controller)
        return await controller.handle_scan(encode_token(token))

    outcome = asyncio.run(scenario())

    assert outcome.kind == 'invalid'
    assert outcome.error_type == 'session_not_found'
    assert not attendance.has_attendance('MATH-s1', classroom['student_id'])


def test_missing_session_is_rejected(validator, attendance, classroom):
    token = QRGenerator(SECRET).generate_attendance_token('CS101', 'CS101-gone', now=NOW_MS)
    controller, _ = make_controller(validator, attendance, classroom)

    async def scenario():
        await start_and_locate(controller)
        return await controller.handle_scan(encode_token(token))

    outcome = asyncio.run(scenario())
    assert outcome.error_type == 'session_not_found'


def test_dispose_while_validating_leaves_controller_idle(validator, attendance, classroom,
                                                         qr_data):
    controller, navigated = make_controller(validator, attendance, classroom)

    async def scenario():
        await start_and_locate(controller)
        scan = asyncio.create_task(controller.handle_scan(qr_data))
        await asyncio.sleep(0)
        controller.dispose()
        return await scan

    outcome = asyncio.run(scenario())

    assert outcome.success
    assert controller.state == ScanState.IDLE
    assert controller.navigation_task is None
    assert navigated == []

"""
QR Code Generator Module - QR Check-in Attendance Service

This module builds the signed, expiring, location-stamped attendance tokens an
instructor displays for a class session, and renders them as QR code images.
It also keeps an issuance log (course, session, instructor, validity window)
so clients can show whether a course currently has an active code and how
long it has left. The tokens themselves are never stored.

Features:
- Attendance token generation with HMAC signature
- QR code image rendering (PNG, base64)
- Optional course caption under the code
- QR code image export
- Active QR code status and issuance history
"""

import base64
import io
import logging
import os
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import qrcode
from PIL import Image, ImageDraw, ImageFont

from attendqr.modules.token_security import (
    AttendanceToken, Location, current_time_ms, encode_token, sign_token
)

DEFAULT_VALIDITY_MINUTES = 5


class QRGenerator:
    """
    Instructor-side generator for attendance QR codes.
    Produces tokens the QRValidator can verify with the same signing secret.
    """

    def __init__(self, secret_key: str, validity_minutes: int = DEFAULT_VALIDITY_MINUTES,
                 database_manager=None, box_size: int = 10, border: int = 4):
        """
        Initialize the QR code generator.

        Args:
            secret_key (str): Server-held signing secret
            validity_minutes (int): Token lifetime in minutes
            database_manager: Database manager for the issuance log (optional)
            box_size (int): Size of each QR module in pixels
            border (int): Border width in modules (minimum is 4)
        """
        if not secret_key:
            raise ValueError('A signing secret is required')
        if validity_minutes <= 0:
            raise ValueError('Token validity must be positive')

        self.secret_key = secret_key
        self.validity_ms = int(validity_minutes * 60 * 1000)
        self.db = database_manager
        self.logger = logging.getLogger(__name__)

        self.default_settings = {
            'version': 1,
            'error_correction': qrcode.constants.ERROR_CORRECT_M,  # ~15% error correction
            'box_size': box_size,
            'border': border,
            'fill_color': 'black',
            'back_color': 'white'
        }

    def generate_attendance_token(self, course_id: str, session_id: str,
                                  instructor_id: Any = None,
                                  location: Optional[Location] = None,
                                  now: Optional[int] = None) -> AttendanceToken:
        """
        Build a signed attendance token for a class session.

        Args:
            course_id (str): Course the token authorizes check-in for
            session_id (str): Class session of that course
            instructor_id: Instructor issuing the token
            location (Location): Classroom location stamp (optional)
            now (int): Issue time in epoch milliseconds (defaults to wall clock)

        Returns:
            AttendanceToken: Token valid from now until now + validity window

        Raises:
            ValueError: course_id or session_id is missing
        """
        if not course_id:
            raise ValueError('A course must be selected before generating a QR code')
        if not session_id:
            raise ValueError('A class session is required to generate a QR code')

        issued_at = current_time_ms() if now is None else int(now)
        expires_at = issued_at + self.validity_ms

        token = AttendanceToken(
            course_id=str(course_id),
            session_id=str(session_id),
            issued_at=issued_at,
            expires_at=expires_at,
            signature=sign_token(str(course_id), str(session_id), issued_at, expires_at,
                                 self.secret_key),
            location=location
        )

        if self.db is not None:
            self.record_issuance(token, instructor_id)

        self.logger.info(
            f"Attendance token generated for course {course_id}, session {session_id} "
            f"by instructor {instructor_id}"
        )
        return token

    def generate_qr_code(self, token: AttendanceToken,
                         course: Optional[Dict[str, Any]] = None,
                         custom_settings: dict = None) -> dict:
        """
        Render a token as a QR code image.

        Args:
            token (AttendanceToken): Token to embed
            course (dict): Course info; when given, a caption is drawn under the code
            custom_settings (dict): Overrides for the default QR settings

        Returns:
            dict: Generation result with base64 PNG image data
        """
        try:
            qr_data = encode_token(token)

            settings = self.default_settings.copy()
            if custom_settings:
                settings.update(custom_settings)

            qr = qrcode.QRCode(
                version=settings['version'],
                error_correction=settings['error_correction'],
                box_size=settings['box_size'],
                border=settings['border']
            )
            qr.add_data(qr_data)
            qr.make(fit=True)

            img = qr.make_image(
                fill_color=settings['fill_color'],
                back_color=settings['back_color']
            ).convert('RGB')

            if course:
                img = self._add_course_info_overlay(img, course, token)

            buffer = io.BytesIO()
            img.save(buffer, format='PNG')
            img_base64 = base64.b64encode(buffer.getvalue()).decode()

            filename = f"qr_{token.course_id}_{token.session_id}_{token.issued_at}.png"

            self.logger.info(f"QR code rendered for course {token.course_id}")
            return {
                'success': True,
                'qr_data': qr_data,
                'token': token.to_dict(),
                'image_base64': img_base64,
                'image_size': img.size,
                'filename': filename,
                'expires_at': token.expires_at
            }

        except Exception as e:
            self.logger.error(f"QR code generation failed: {str(e)}")
            return {
                'success': False,
                'error': str(e),
                'course_id': token.course_id
            }

    def _add_course_info_overlay(self, qr_img: Image.Image, course: dict,
                                 token: AttendanceToken) -> Image.Image:
        """
        Add a course caption and expiry time under the QR code.

        Args:
            qr_img (Image.Image): QR code image
            course (dict): Course information
            token (AttendanceToken): Token shown in the image

        Returns:
            Image.Image: QR code with caption
        """
        try:
            original_size = qr_img.size
            new_img = Image.new('RGB', (original_size[0], original_size[1] + 70), 'white')
            new_img.paste(qr_img, (0, 0))

            draw = ImageDraw.Draw(new_img)
            try:
                font_large = ImageFont.truetype("arial.ttf", 16)
                font_small = ImageFont.truetype("arial.ttf", 12)
            except (IOError, OSError):
                font_large = ImageFont.load_default()
                font_small = ImageFont.load_default()

            title = f"{course.get('code', token.course_id)} - {course.get('name', '')}".strip(' -')
            expiry = datetime.fromtimestamp(token.expires_at / 1000, tz=timezone.utc).strftime('%H:%M:%S UTC')
            subtitle = f"Valid until {expiry}"

            img_width = new_img.size[0]
            text_y = original_size[1] + 10
            for text, font, offset in ((title, font_large, 0), (subtitle, font_small, 25)):
                bbox = draw.textbbox((0, 0), text, font=font)
                width = bbox[2] - bbox[0]
                draw.text(((img_width - width) // 2, text_y + offset), text,
                          fill='black', font=font)

            return new_img

        except Exception as e:
            self.logger.warning(f"Failed to add overlay, returning original QR code: {str(e)}")
            return qr_img

    def save_qr_code_image(self, image_base64: str, filename: str,
                           output_dir: str = 'static/qr_codes') -> bool:
        """
        Save a rendered QR code image to the file system.

        Returns:
            bool: Success status
        """
        try:
            os.makedirs(output_dir, exist_ok=True)
            file_path = os.path.join(output_dir, filename)
            with open(file_path, 'wb') as f:
                f.write(base64.b64decode(image_base64))

            self.logger.info(f"QR code image saved to {file_path}")
            return True

        except Exception as e:
            self.logger.error(f"Failed to save QR code image: {str(e)}")
            return False

    def record_issuance(self, token: AttendanceToken, instructor_id: Any = None) -> Optional[int]:
        """Log that a token was issued, without storing the token itself."""
        try:
            return self.db.execute_update(
                """INSERT INTO qr_issuances (course_id, session_id, instructor_id, issued_at, expires_at)
                   VALUES (?, ?, ?, ?, ?)""",
                (token.course_id, token.session_id, instructor_id,
                 token.issued_at, token.expires_at)
            )
        except Exception as e:
            self.logger.error(f"Failed to record QR issuance for course {token.course_id}: {str(e)}")
            return None

    def get_active_qr_code(self, course_id: str, now: Optional[int] = None) -> Optional[Dict[str, Any]]:
        """
        Latest unexpired QR code issued for a course.

        Returns:
            Dict[str, Any]: Issuance with time_left (seconds) and formatted_time, or None
        """
        if self.db is None:
            return None

        now = current_time_ms() if now is None else now
        try:
            issuance = self.db.execute_query(
                """SELECT q.*, c.name AS course_name
                   FROM qr_issuances q
                   LEFT JOIN courses c ON q.course_id = c.id
                   WHERE q.course_id = ? AND q.issued_at <= ? AND q.expires_at >= ?
                   ORDER BY q.issued_at DESC, q.id DESC
                   LIMIT 1""",
                (course_id, now, now),
                fetch_all=False
            )
        except Exception as e:
            self.logger.error(f"Failed to get active QR code for course {course_id}: {str(e)}")
            return None

        if not issuance:
            return None

        time_left = max(0, (issuance['expires_at'] - now) // 1000)
        return {
            'id': issuance['id'],
            'course_id': issuance['course_id'],
            'course_name': issuance['course_name'],
            'session_id': issuance['session_id'],
            'expires_at': issuance['expires_at'],
            'time_left': time_left,
            'formatted_time': f"{time_left // 60}:{time_left % 60:02d}"
        }

    def get_qr_code_history(self, course_id: str, limit: int = 10) -> List[Dict[str, Any]]:
        """Most recent QR issuances for a course."""
        if self.db is None:
            return []

        try:
            return self.db.execute_query(
                """SELECT * FROM qr_issuances
                   WHERE course_id = ?
                   ORDER BY issued_at DESC, id DESC
                   LIMIT ?""",
                (course_id, limit)
            )
        except Exception as e:
            self.logger.error(f"Failed to get QR history for course {course_id}: {str(e)}")
            return []

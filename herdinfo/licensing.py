"""
License arithmetic and license-key handling.

A ranch is licensed until its `license_expiration` date. After that it keeps
full access for a grace period, then becomes read-only. A ranch with no
license at all is read-only too.
"""

from dataclasses import dataclass, asdict
from datetime import date
from typing import Optional
import logging
import secrets

from . import db
from .models import LicenseKey, LICENSE_TYPES, utcnow
from .errors import LicenseError, ValidationError

logger = logging.getLogger(__name__)

GRACE_PERIOD_DAYS = 30

KEY_ALPHABET = 'ABCDEFGHJKLMNPQRSTUVWXYZ23456789'


@dataclass
class LicenseInfo:
    status: str
    is_read_only: bool
    days_until_expiration: Optional[int] = None
    days_in_grace_period: Optional[int] = None
    license_type: Optional[str] = None
    expiration_date: Optional[str] = None
    max_animals: Optional[int] = None

    def to_dict(self):
        return asdict(self)


def check_license_status(ranch, today=None, grace_period_days=GRACE_PERIOD_DAYS):
    """Works out where a ranch stands with its license as of `today`."""
    if ranch is None or ranch.license_expiration is None:
        return LicenseInfo(status='no_license', is_read_only=True)

    today = today or date.today()
    days_left = (ranch.license_expiration - today).days
    common = dict(
        license_type=ranch.license_type,
        expiration_date=ranch.license_expiration.isoformat(),
        max_animals=ranch.max_animals,
    )

    if days_left >= 0:
        return LicenseInfo(status='valid', is_read_only=False, days_until_expiration=days_left, **common)

    days_expired = -days_left
    if days_expired <= grace_period_days:
        return LicenseInfo(status='grace_period', is_read_only=False, days_in_grace_period=days_expired, **common)

    return LicenseInfo(status='expired', is_read_only=True, **common)


def can_add_animal(info, current_animal_count):
    if info.status in ('no_license', 'expired'):
        return False
    if info.max_animals is not None and current_animal_count >= info.max_animals:
        return False
    return True


def license_message(info, current_animal_count):
    """The reason adding an animal is blocked, or None when it is allowed."""
    if info.status == 'no_license':
        return 'No active license. Please activate a license to add animals.'
    if info.status == 'expired':
        return 'License expired. Please renew your license to add animals.'
    if info.max_animals is not None and current_animal_count >= info.max_animals:
        return (f'Animal limit reached ({info.max_animals} animals). '
                'Please upgrade your license to add more animals.')
    return None


def ensure_can_add_animal(info, current_animal_count):
    message = license_message(info, current_animal_count)
    if message:
        raise LicenseError(message)


def ensure_writable(info):
    if info.is_read_only:
        if info.status == 'no_license':
            raise LicenseError('This ranch has no active license and is read-only.')
        raise LicenseError('The license for this ranch has expired and the ranch is read-only.')


def generate_license_key():
    # Not a format anyone has to type by hand; it only has to be unique.
    return ''.join(secrets.choice(KEY_ALPHABET) for _ in range(16))


def create_license_key(license_type, expiration_date, max_animals=50, key=None, created_by=None):
    """Adds a new, unused license key. Commits."""
    if license_type not in LICENSE_TYPES:
        raise ValidationError(f"'license_type' must be one of: {', '.join(LICENSE_TYPES)}.")
    if expiration_date is None:
        raise ValidationError("'expiration_date' is required.")
    if max_animals is None or max_animals < 1:
        raise ValidationError("'max_animals' must be a positive whole number.")

    key = (key or '').strip().upper() or generate_license_key()
    if LicenseKey.query.filter_by(key=key).first():
        raise LicenseError(f"License key '{key}' already exists.", status_code=409)

    license_key = LicenseKey(
        key=key,
        license_type=license_type,
        expiration_date=expiration_date,
        max_animals=max_animals,
        created_by_user_id=created_by.id if created_by else None,
    )
    db.session.add(license_key)
    db.session.commit()
    logger.info("Created %s license key %s (expires %s)", license_type, key, expiration_date)
    return license_key


def apply_license_key(ranch, license_key):
    """Copies a key's terms onto a ranch and marks the key as used. Does not commit."""
    ranch.active_license_key = license_key.key
    ranch.license_type = license_key.license_type
    ranch.license_expiration = license_key.expiration_date
    ranch.max_animals = license_key.max_animals
    ranch.license_activated_at = utcnow()
    if ranch.id is None:
        db.session.flush()
    license_key.used_by_ranch_id = ranch.id


def activate_license(ranch, key, today=None):
    """Activates a license key on a ranch. Commits."""
    today = today or date.today()
    key = (key or '').strip().upper()
    if not key:
        raise ValidationError("The 'license_key' field is required.")

    license_key = LicenseKey.query.filter_by(key=key).first()
    if license_key is None:
        raise LicenseError('Invalid license key.', status_code=404)
    if license_key.used_by_ranch_id is not None and license_key.used_by_ranch_id != ranch.id:
        raise LicenseError('This license key has already been used by another ranch.', status_code=409)
    if license_key.expiration_date < today:
        raise LicenseError('This license key has expired.')

    apply_license_key(ranch, license_key)
    db.session.commit()
    logger.info("Activated license %s on ranch %s", key, ranch.id)
    return license_key


def available_license_keys(today=None):
    today = today or date.today()
    return LicenseKey.query.filter(
        LicenseKey.used_by_ranch_id.is_(None),
        LicenseKey.expiration_date > today,
    ).order_by(LicenseKey.created_at.desc(), LicenseKey.id.desc()).all()

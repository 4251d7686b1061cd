import logging
import secrets
from datetime import timedelta

from sqlalchemy.exc import IntegrityError

from . import db
from .models import Invitation, UserRanch, utcnow
from .licensing import apply_license_key
from .utils import create_ranch
from .errors import InvitationError, ValidationError

logger = logging.getLogger(__name__)

CODE_ALPHABET = 'ABCDEFGHJKLMNPQRSTUVWXYZ23456789'
CODE_LENGTH = 8
DEFAULT_EXPIRY_DAYS = 7
MEMBER_ROLES = ['MANAGER', 'RANCHHAND', 'VIEWER', 'VET']


def generate_invitation_code():
    return ''.join(secrets.choice(CODE_ALPHABET) for _ in range(CODE_LENGTH))


def _unique_code():
    while True:
        code = generate_invitation_code()
        if not Invitation.query.filter_by(code=code).first():
            return code


def _clean_email(email):
    email = (email or '').strip().lower()
    return email or None


def create_ranch_creation_invitation(license_key, created_by, restricted_email=None, expires_in_days=DEFAULT_EXPIRY_DAYS):
    """Invites someone to create a new ranch under the given (unused) license key. Commits."""
    if license_key.used_by_ranch_id is not None:
        raise InvitationError('This license key has already been used.', status_code=409)

    invitation = Invitation(
        code=_unique_code(),
        type='ranch_creation',
        license_key_id=license_key.id,
        restricted_email=_clean_email(restricted_email),
        expires_at=utcnow() + timedelta(days=expires_in_days),
        created_by_user_id=created_by.id,
    )
    db.session.add(invitation)
    db.session.commit()
    logger.info("Created ranch-creation invitation %s for license %s", invitation.code, license_key.key)
    return invitation


def create_ranch_member_invitation(ranch, role, created_by, restricted_email=None, expires_in_days=DEFAULT_EXPIRY_DAYS):
    """Invites someone to join an existing ranch with `role`. Commits."""
    role = (role or '').strip().upper()
    if role not in MEMBER_ROLES:
        raise ValidationError(f"'role' must be one of: {', '.join(MEMBER_ROLES)}.")

    invitation = Invitation(
        code=_unique_code(),
        type='ranch_member',
        ranch_id=ranch.id,
        role=role,
        restricted_email=_clean_email(restricted_email),
        expires_at=utcnow() + timedelta(days=expires_in_days),
        created_by_user_id=created_by.id,
    )
    db.session.add(invitation)
    db.session.commit()
    logger.info("Created %s invitation %s for ranch %s", role, invitation.code, ranch.id)
    return invitation


def validate_invitation_code(code, user=None, now=None):
    """
    Looks up an invitation by code and checks it can still be redeemed.
    Raises InvitationError describing why not.
    """
    code = (code or '').strip().upper()
    invitation = Invitation.query.filter_by(code=code).first() if code else None
    if invitation is None:
        raise InvitationError('Invalid invitation code', status_code=404)
    if invitation.used_at is not None:
        raise InvitationError('This invitation has already been used', status_code=409)
    if invitation.expires_at < (now or utcnow()):
        raise InvitationError('This invitation has expired')
    if user is not None and invitation.restricted_email:
        if user.email.strip().lower() != invitation.restricted_email:
            raise InvitationError(f'This invitation is restricted to {invitation.restricted_email}', status_code=403)
    return invitation


def redeem_invitation(invitation, user, ranch_name=None, ranch_location=None):
    """
    Redeems a validated invitation for `user`.
    Returns the ranch the user ends up in. All changes go in a single commit.
    """
    try:
        if invitation.type == 'ranch_creation':
            license_key = invitation.license_key
            if license_key is None:
                raise InvitationError('License key not found', status_code=404)
            if license_key.used_by_ranch_id is not None:
                raise InvitationError('The license key for this invitation has already been used.', status_code=409)
            ranch = create_ranch(ranch_name, owner=user, location=(ranch_location or '').strip() or None)
            apply_license_key(ranch, license_key)
        else:
            ranch = invitation.ranch
            if db.session.get(UserRanch, (user.id, ranch.id)) is not None:
                raise InvitationError('You are already a member of this ranch.', status_code=409)
            db.session.add(UserRanch(user_id=user.id, ranch_id=ranch.id, role=invitation.role))

        invitation.used_at = utcnow()
        invitation.used_by_user_id = user.id
        db.session.commit()
    except (InvitationError, ValidationError):
        db.session.rollback()
        raise
    except IntegrityError:
        db.session.rollback()
        raise InvitationError('Could not redeem the invitation because of conflicting data.', status_code=409)

    logger.info("User %s redeemed invitation %s (%s) for ranch %s", user.id, invitation.code, invitation.type, ranch.id)
    return ranch


def ranch_invitations(ranch):
    return Invitation.query.filter_by(ranch_id=ranch.id, type='ranch_member') \
        .order_by(Invitation.created_at.desc(), Invitation.id.desc()).all()

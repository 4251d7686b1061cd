from . import db
from .models import Animal, Ranch, RanchSettings, UserRanch
from .errors import ValidationError
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
import re

DATE_RE = re.compile(r'^(\d{4}-\d{2}-\d{2})(?:T[\d:.+\-Z]*)?$')


def parse_date(value, field_name='date'):
    """
    Parses a 'YYYY-MM-DD' string into a date.
    Returns None for blank values; raises ValidationError on a malformed one.
    """
    if value is None:
        return None
    if hasattr(value, 'isoformat') and not isinstance(value, str):
        return value
    value = str(value).strip()
    if not value:
        return None
    # A trailing time part ('2024-03-05T10:00:00') is allowed and dropped.
    match = DATE_RE.match(value)
    try:
        if match is None:
            raise ValueError(value)
        return datetime.strptime(match.group(1), '%Y-%m-%d').date()
    except ValueError:
        raise ValidationError(f"Invalid {field_name} '{value}'. Please use YYYY-MM-DD.")


def parse_float(value, field_name):
    """Blank gives None; anything else must be a number."""
    if value is None or (isinstance(value, str) and not value.strip()):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        raise ValidationError(f"'{field_name}' must be a number.")


def parse_int(value, field_name):
    if value is None or (isinstance(value, str) and not value.strip()):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"'{field_name}' must be a whole number.")


def blank_to_none(value):
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def safe_filename(text, fallback):
    """Replaces anything that is not a letter or digit with '_'."""
    text = (text or '').strip()
    if not text:
        return fallback
    return re.sub(r'[^a-zA-Z0-9]', '_', text)


def create_ranch(name, owner=None, **fields):
    """
    Creates a ranch together with its settings row and, when given, the owner's
    membership. Flushes so the ranch has an id; the caller commits.
    """
    name = (name or '').strip()
    if not name:
        raise ValidationError("The 'name' field is required.")
    ranch = Ranch(name=name, **fields)
    ranch.settings = RanchSettings()
    db.session.add(ranch)
    db.session.flush()
    if owner is not None:
        db.session.add(UserRanch(user_id=owner.id, ranch_id=ranch.id, role='OWNER'))
    return ranch


def find_animals_by_tag(ranch_id, tag_number, present_only=False):
    """Finds animals of a ranch by tag number, optionally only those still on the ranch."""
    query = Animal.query.filter(Animal.ranch_id == ranch_id, Animal.tag_number == tag_number)
    if present_only:
        query = query.filter(Animal.status == 'PRESENT')
    return query.order_by(Animal.id).all()


def count_present_animals(ranch_id):
    return db.session.query(Animal.id).filter(Animal.ranch_id == ranch_id, Animal.status == 'PRESENT').count()


def count_ranch_animals(ranch_id):
    """Every animal of the ranch, whatever its status. This is what counts against max_animals."""
    return db.session.query(Animal.id).filter(Animal.ranch_id == ranch_id).count()


def calculate_dose(drug, weight_lbs):
    """
    Dose in ml for a drug and an animal weight.
    A fixed dose wins over a per-pound dose; None when no dose can be worked out.
    """
    if drug.fixed_dose_ml is not None:
        return drug.fixed_dose_ml
    if drug.ccs_per_pound is not None and weight_lbs:
        return weight_lbs * drug.ccs_per_pound
    return None


def prorate_sale(total, count):
    """
    Splits a total sale amount into `count` prices, rounded to cents.
    The rounding remainder goes to the last share so the shares add up to the total.
    """
    if count <= 0:
        raise ValidationError('Select at least one animal to prorate the sale across.')
    try:
        total = Decimal(str(total)).quantize(Decimal('0.01'), rounding=ROUND_HALF_UP)
    except InvalidOperation:
        raise ValidationError("'total_amount' must be a number.")
    if total < 0:
        raise ValidationError("'total_amount' cannot be negative.")

    share = (total / count).quantize(Decimal('0.01'), rounding=ROUND_HALF_UP)
    shares = [share] * count
    shares[-1] = total - share * (count - 1)
    return [float(s) for s in shares]


def validate_custom_field_value(field_type, raw):
    """
    Validates a custom field value against its declared type and returns the
    text to store (None for blank).
    """
    if raw is None or not str(raw).strip():
        return None
    raw = str(raw).strip()

    if field_type == 'integer':
        try:
            return str(int(raw))
        except ValueError:
            raise ValidationError(f"'{raw}' is not a whole number.")
    if field_type in ('decimal', 'dollar'):
        try:
            number = Decimal(raw.replace('$', '').replace(',', ''))
        except InvalidOperation:
            raise ValidationError(f"'{raw}' is not a number.")
        if field_type == 'dollar':
            number = number.quantize(Decimal('0.01'), rounding=ROUND_HALF_UP)
        return str(number)
    return raw

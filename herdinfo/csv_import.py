"""
Import of herd records exported from the legacy (V1) desktop program.

The V1 exports are header-less CSV files with a fixed column order:

    animals: uid, source, status, tag, tag color, name, sex, description,
             birth date, weaning date, exit date, mother uid, [father uid], [notes]
    medical: animal uid, date, description
"""

from dataclasses import dataclass, field, asdict
from datetime import date
from typing import List
import io
import logging

import pandas as pd

from . import db
from .models import Animal, MedicalHistory
from .licensing import check_license_status, can_add_animal, license_message
from .utils import count_ranch_animals
from .errors import ValidationError

logger = logging.getLogger(__name__)

ANIMAL_COLUMNS = [
    'uid', 'source', 'status', 'tag_number', 'tag_color', 'name', 'sex', 'description',
    'birth_date', 'weaning_date', 'exit_date', 'mother_uid', 'father_uid', 'notes',
]
MEDICAL_COLUMNS = ['animal_uid', 'date', 'description']

# uid through mother uid
MIN_ANIMAL_FIELDS = 12
MIN_MEDICAL_FIELDS = 3

# The V1 program wrote 1900-01-01 (and similar) for "unknown".
EARLIEST_REAL_YEAR = 1950


@dataclass
class ImportResult:
    imported: int = 0
    skipped: int = 0
    medical_imported: int = 0
    medical_skipped: int = 0
    errors: List[str] = field(default_factory=list)

    @property
    def success(self):
        return not self.errors

    def to_dict(self):
        data = asdict(self)
        data['success'] = self.success
        return data


def read_positional_csv(content, columns, min_fields):
    """
    Reads a header-less CSV into a DataFrame with the given column names.
    Rows with fewer than `min_fields` fields are dropped; every cell is a stripped string.
    """
    if isinstance(content, bytes):
        content = content.decode('utf-8-sig')
    if not content.strip():
        return pd.DataFrame(columns=columns)

    try:
        df = pd.read_csv(
            io.StringIO(content),
            header=None,
            names=columns,
            index_col=False,
            dtype=str,
            keep_default_na=False,
            skip_blank_lines=True,
            on_bad_lines='skip',
        )
    except pd.errors.ParserError as e:
        raise ValidationError(f'Could not read CSV file: {e}')

    # Missing trailing fields come back as NaN; fields that are present but empty stay ''.
    field_counts = df.notna().sum(axis=1)
    short_rows = int((field_counts < min_fields).sum())
    if short_rows:
        logger.warning("Skipping %d CSV rows with fewer than %d fields", short_rows, min_fields)
    df = df[field_counts >= min_fields]
    return df.fillna('').apply(lambda col: col.str.strip())


def parse_v1_date(value):
    if not value or not value.strip():
        return None
    parsed = pd.to_datetime(value.strip(), errors='coerce')
    if pd.isna(parsed) or parsed.year < EARLIEST_REAL_YEAR:
        return None
    return parsed.date()


def parse_v1_sex(value):
    normalized = (value or '').strip().upper()
    return {
        'BULL': 'BULL', 'B': 'BULL',
        'COW': 'COW', 'C': 'COW',
        'STEER': 'STEER', 'S': 'STEER',
        'HEIFER': 'HEIFER', 'H': 'HEIFER',
    }.get(normalized, 'BULL')


def parse_v1_source(value):
    normalized = (value or '').strip().upper()
    if normalized in ('PURCHASED', 'P'):
        return 'PURCHASED'
    return 'BORN'


def parse_v1_status(value):
    normalized = (value or '').strip().upper()
    if normalized in ('SOLD', 'S'):
        return 'SOLD'
    if normalized in ('DEAD', 'D'):
        return 'DEAD'
    return 'PRESENT'


def convert_v1_animal(row, ranch):
    """Builds an (unsaved) Animal from one V1 animals row."""
    return Animal(
        ranch_id=ranch.id,
        animal_type='Cattle',
        legacy_uid=row['uid'] or None,
        tag_number=row['tag_number'] or None,
        tag_color=row['tag_color'] or None,
        name=row['name'] or None,
        sex=parse_v1_sex(row['sex']),
        source=parse_v1_source(row['source']),
        status=parse_v1_status(row['status']),
        birth_date=parse_v1_date(row['birth_date']),
        weaning_date=parse_v1_date(row['weaning_date']),
        exit_date=parse_v1_date(row['exit_date']),
        description=row['description'] or None,
        notes=row['notes'] or None,
    )


def import_v1_files(ranch, animals_csv, medical_csv=None, user=None, today=None, grace_period_days=30):
    """
    Imports a V1 animals file (and optionally its medical file) into `ranch`.

    Animals are inserted first, then mother/father links are resolved by legacy
    uid, then medical rows are attached. The whole import is one commit.
    """
    result = ImportResult()
    animal_rows = read_positional_csv(animals_csv, ANIMAL_COLUMNS, MIN_ANIMAL_FIELDS)
    medical_rows = read_positional_csv(medical_csv, MEDICAL_COLUMNS, MIN_MEDICAL_FIELDS) \
        if medical_csv else pd.DataFrame(columns=MEDICAL_COLUMNS)
    logger.info("V1 import for ranch %s: %d animal rows, %d medical rows", ranch.id, len(animal_rows), len(medical_rows))

    license_info = check_license_status(ranch, today, grace_period_days)
    animal_count = count_ranch_animals(ranch.id)

    uid_to_animal = {}
    parent_links = []

    # Pass 1: animals
    for _, row in animal_rows.iterrows():
        if not can_add_animal(license_info, animal_count):
            result.skipped += 1
            message = license_message(license_info, animal_count)
            if message not in result.errors:
                result.errors.append(message)
            continue

        animal = convert_v1_animal(row, ranch)
        db.session.add(animal)
        result.imported += 1
        animal_count += 1
        if animal.legacy_uid:
            uid_to_animal[animal.legacy_uid] = animal
        parent_links.append((animal, row['mother_uid'], row['father_uid']))

    db.session.flush()

    # Pass 2: parentage, now that every animal has an id
    for animal, mother_uid, father_uid in parent_links:
        mother = uid_to_animal.get(mother_uid) if mother_uid else None
        father = uid_to_animal.get(father_uid) if father_uid else None
        if mother is not None and mother is not animal:
            animal.mother_id = mother.id
        if father is not None and father is not animal:
            animal.father_id = father.id

    # Pass 3: medical history
    for _, row in medical_rows.iterrows():
        animal = uid_to_animal.get(row['animal_uid'])
        if animal is None or not row['description']:
            result.medical_skipped += 1
            continue
        db.session.add(MedicalHistory(
            animal=animal,
            ranch_id=ranch.id,
            date=parse_v1_date(row['date']) or today or date.today(),
            description=row['description'],
            created_by_user_id=user.id if user else None,
        ))
        result.medical_imported += 1

    db.session.commit()
    logger.info("V1 import for ranch %s finished: %s", ranch.id, result.to_dict())
    return result

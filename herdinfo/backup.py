"""
Comprehensive ranch backup and restore.

A backup is a zip archive holding:

    metadata.json                   format version, ranch, counts
    animals_complete_backup.csv     one row per animal, custom fields as extra columns
    photos/<animal id>_<tag>_<photo id>.<ext>

Restoring reads the archive back into a (possibly different) ranch. Rows get
fresh ids; animals that already exist in the target ranch are not duplicated,
only their missing medical history is merged in. Failures on individual rows
or photos are logged and reported, and the restore carries on.
"""

from dataclasses import dataclass, field, asdict
from datetime import date
from typing import List
import csv
import hashlib
import io
import json
import logging
import zipfile

import pandas as pd
from sqlalchemy.exc import SQLAlchemyError

from . import db
from .models import (Animal, AnimalPhoto, CustomFieldDefinition, CustomFieldValue, MedicalHistory,
                     ANIMAL_STATUSES, ANIMAL_SOURCES, utcnow)
from .animal_types import normalize_animal_type
from .utils import parse_date, parse_float, safe_filename
from .errors import BackupFormatError, HerdInfoError

logger = logging.getLogger(__name__)

BACKUP_FORMAT_VERSION = '3.0'
METADATA_NAME = 'metadata.json'
CSV_NAME = 'animals_complete_backup.csv'
PHOTOS_FOLDER = 'photos/'

STANDARD_HEADERS = [
    'Animal UID',
    'Tag Number',
    'Name',
    'Type',
    'Sex',
    'Source',
    'Birth Date',
    'Weaning Date',
    'Status',
    'Exit Date',
    'Sale Price',
    'Purchase Date',
    'Purchase Price',
    'Weight (lbs)',
    'Mother Tag',
    'Father Tag',
    'Tag Color',
    'Description',
    'Notes',
    'Medical History',
    'Photo Count',
]
REQUIRED_HEADERS = ['Animal UID', 'Tag Number']

MEDICAL_ENTRY_SEPARATOR = ' | '


@dataclass
class RestoreSummary:
    animals_added: int = 0
    animals_skipped: int = 0
    medical_history_added: int = 0
    medical_history_skipped: int = 0
    custom_fields_added: int = 0
    photos_added: int = 0
    photos_skipped: int = 0
    errors: List[str] = field(default_factory=list)

    def to_dict(self):
        return asdict(self)


# --- Backup ---

def format_medical_history(entries):
    """'date: description' entries, oldest first, joined with ' | '."""
    ordered = sorted(entries, key=lambda m: (m.date, m.id or 0))
    return MEDICAL_ENTRY_SEPARATOR.join(f"{m.date.isoformat()}: {m.description}" for m in ordered)


def _fmt(value):
    if value is None:
        return ''
    if isinstance(value, date):
        return value.isoformat()
    return str(value)


def generate_backup_csv(animals, custom_fields):
    """Renders the animals of a ranch as the backup CSV text."""
    by_id = {a.id: a for a in animals}
    output = io.StringIO()
    writer = csv.writer(output, lineterminator='\n')
    writer.writerow(STANDARD_HEADERS + [f.field_name for f in custom_fields])

    for animal in animals:
        mother = by_id.get(animal.mother_id)
        father = by_id.get(animal.father_id)
        values = {v.field_id: v.value for v in animal.custom_values}
        writer.writerow([
            animal.id,
            _fmt(animal.tag_number),
            _fmt(animal.name),
            animal.animal_type or 'Cattle',
            _fmt(animal.sex),
            _fmt(animal.source),
            _fmt(animal.birth_date),
            _fmt(animal.weaning_date),
            animal.status or 'PRESENT',
            _fmt(animal.exit_date),
            _fmt(animal.sale_price),
            _fmt(animal.purchase_date),
            _fmt(animal.purchase_price),
            _fmt(animal.weight_lbs),
            _fmt(mother.tag_number) if mother else '',
            _fmt(father.tag_number) if father else '',
            _fmt(animal.tag_color),
            _fmt(animal.description),
            _fmt(animal.notes),
            format_medical_history(animal.medical_history),
            len(animal.photos),
        ] + [_fmt(values.get(f.id)) for f in custom_fields])

    return output.getvalue()


def photo_archive_name(animal, photo):
    safe_tag = safe_filename(animal.tag_number, 'NoTag')
    return f"{PHOTOS_FOLDER}{animal.id}_{safe_tag}_{photo.id}.{photo.extension}"


def create_backup(ranch, storage):
    """
    Builds the backup archive for a ranch and returns it as bytes.
    Stamps the ranch's last_backup_date.
    """
    animals = Animal.query.filter_by(ranch_id=ranch.id).order_by(Animal.id).all()
    custom_fields = CustomFieldDefinition.query.filter_by(ranch_id=ranch.id) \
        .order_by(CustomFieldDefinition.display_order, CustomFieldDefinition.id).all()
    logger.info("Backing up ranch %s: %d animals", ranch.id, len(animals))

    mem_file = io.BytesIO()
    photo_count = 0
    with zipfile.ZipFile(mem_file, 'w', compression=zipfile.ZIP_DEFLATED, compresslevel=6) as zf:
        zf.writestr(CSV_NAME, generate_backup_csv(animals, custom_fields))

        for animal in animals:
            for photo in animal.photos:
                try:
                    data = storage.read(photo.storage_path)
                except (OSError, ValueError) as e:
                    logger.warning("Failed to read photo %s (%s) for backup: %s", photo.id, photo.storage_path, e)
                    continue
                zf.writestr(photo_archive_name(animal, photo), data)
                photo_count += 1

        metadata = {
            'version': BACKUP_FORMAT_VERSION,
            'created_at': utcnow().isoformat(),
            'ranch_id': ranch.id,
            'ranch_name': ranch.name,
            'animal_count': len(animals),
            'photo_count': photo_count,
            'custom_fields': [f.to_dict() for f in custom_fields],
        }
        zf.writestr(METADATA_NAME, json.dumps(metadata, indent=2))

    ranch.last_backup_date = utcnow()
    db.session.commit()
    logger.info("Backup of ranch %s complete: %d animals, %d photos", ranch.id, len(animals), photo_count)
    return mem_file.getvalue()


def backup_filename(ranch, today=None):
    today = today or date.today()
    safe_name = safe_filename(ranch.name, f'Ranch_{ranch.id}')
    return f"{safe_name}_Complete_Backup_{today.isoformat()}.zip"


# --- Restore ---

def parse_medical_history(text):
    """Splits a 'date: description | date: description' cell into (date string, description) pairs."""
    if not text or not text.strip():
        return []
    parsed = []
    for entry in text.split('|'):
        entry = entry.strip()
        date_part, sep, description = entry.partition(':')
        if not sep:
            continue
        date_part, description = date_part.strip(), description.strip()
        if date_part and description:
            parsed.append((date_part, description))
    return parsed


def read_backup_rows(zf):
    """Reads the backup CSV into a list of dicts keyed by header, plus the custom field headers."""
    try:
        raw = zf.read(CSV_NAME)
    except KeyError:
        raise BackupFormatError(f'Backup file does not contain {CSV_NAME}')

    try:
        df = pd.read_csv(io.BytesIO(raw), dtype=str, keep_default_na=False, encoding='utf-8-sig')
    except pd.errors.EmptyDataError:
        return [], []
    except pd.errors.ParserError as e:
        raise BackupFormatError(f'Could not read {CSV_NAME}: {e}')

    df.columns = [str(c).strip() for c in df.columns]
    missing = [h for h in REQUIRED_HEADERS if h not in df.columns]
    if missing:
        raise BackupFormatError(f"{CSV_NAME} is missing required columns: {', '.join(missing)}")

    df = df.apply(lambda col: col.str.strip())
    custom_headers = [h for h in df.columns if h not in STANDARD_HEADERS]
    return df.to_dict('records'), custom_headers


class _Restore:
    """State for one restore run."""

    def __init__(self, zf, ranch, storage, user=None):
        self.zf = zf
        self.ranch = ranch
        self.storage = storage
        self.user = user
        self.summary = RestoreSummary()
        self.uid_map = {}       # backup Animal UID -> target Animal
        self.added = []         # (row, Animal) for newly inserted animals
        self.field_map = {}
        self.claimed = set()    # ids of existing animals already matched by a row

        existing = Animal.query.filter_by(ranch_id=ranch.id).order_by(Animal.id).all()
        self.existing_by_id = {a.id: a for a in existing}
        # Tags get reused (a sold cow and her replacement), so keep every candidate.
        self.existing_by_tag = {}
        for animal in existing:
            if animal.tag_number:
                self.existing_by_tag.setdefault((animal.tag_number, animal.animal_type), []).append(animal)

    def error(self, message):
        logger.warning("Restore into ranch %s: %s", self.ranch.id, message)
        self.summary.errors.append(message)

    # custom fields

    def prepare_custom_fields(self, rows, custom_headers):
        for definition in CustomFieldDefinition.query.filter_by(ranch_id=self.ranch.id).all():
            self.field_map[definition.field_name] = definition

        next_order = max([f.display_order for f in self.field_map.values()], default=-1) + 1
        for header in custom_headers:
            if header in self.field_map or not any(row.get(header) for row in rows):
                continue
            definition = CustomFieldDefinition(ranch_id=self.ranch.id, field_name=header,
                                               field_type='text', display_order=next_order)
            db.session.add(definition)
            self.field_map[header] = definition
            next_order += 1
            self.summary.custom_fields_added += 1
        db.session.flush()

    # animals

    def find_duplicate(self, row, animal_type):
        """
        The existing animal a backup row stands for, or None when it is new.
        A tag match only counts when it is unambiguous: exactly one unclaimed
        animal with that (tag, type), narrowed by status and birth date if needed.
        """
        uid = row.get('Animal UID', '')
        tag = row.get('Tag Number') or None
        if uid.isdigit():
            animal = self.existing_by_id.get(int(uid))
            if animal is not None and animal.id not in self.claimed and animal.tag_number == tag:
                return animal
        if not tag:
            return None

        candidates = [a for a in self.existing_by_tag.get((tag, animal_type), []) if a.id not in self.claimed]
        if len(candidates) > 1:
            status = (row.get('Status') or 'PRESENT').upper()
            candidates = [a for a in candidates if a.status == status]
        if len(candidates) > 1 and row.get('Birth Date'):
            birth_date = parse_date(row.get('Birth Date'), 'Birth Date')
            candidates = [a for a in candidates if a.birth_date == birth_date]
        return candidates[0] if len(candidates) == 1 else None

    def insert_animal(self, row, animal_type):
        status = (row.get('Status') or 'PRESENT').upper()
        source = (row.get('Source') or 'BORN').upper()
        animal = Animal(
            ranch_id=self.ranch.id,
            animal_type=animal_type,
            tag_number=row.get('Tag Number') or None,
            name=row.get('Name') or None,
            sex=(row.get('Sex') or '').upper() or None,
            source=source if source in ANIMAL_SOURCES else 'BORN',
            status=status if status in ANIMAL_STATUSES else 'PRESENT',
            birth_date=parse_date(row.get('Birth Date'), 'Birth Date'),
            weaning_date=parse_date(row.get('Weaning Date'), 'Weaning Date'),
            exit_date=parse_date(row.get('Exit Date'), 'Exit Date'),
            sale_price=parse_float(row.get('Sale Price'), 'Sale Price'),
            purchase_date=parse_date(row.get('Purchase Date'), 'Purchase Date'),
            purchase_price=parse_float(row.get('Purchase Price'), 'Purchase Price'),
            weight_lbs=parse_float(row.get('Weight (lbs)'), 'Weight (lbs)'),
            tag_color=row.get('Tag Color') or None,
            description=row.get('Description') or None,
            notes=row.get('Notes') or None,
        )
        db.session.add(animal)

        for header, definition in self.field_map.items():
            value = row.get(header)
            if value:
                db.session.add(CustomFieldValue(animal=animal, field_id=definition.id, value=value))

        db.session.flush()
        return animal

    def merge_medical_history(self, animal, text):
        existing = {(m.date.isoformat(), m.description) for m in animal.medical_history}
        added = skipped = 0
        for date_text, description in parse_medical_history(text):
            entry_date = parse_date(date_text, 'medical history date')
            key = (entry_date.isoformat(), description)
            if key in existing:
                skipped += 1
                continue
            db.session.add(MedicalHistory(
                animal=animal,
                ranch_id=self.ranch.id,
                date=entry_date,
                description=description,
                created_by_user_id=self.user.id if self.user else None,
            ))
            existing.add(key)
            added += 1
        return added, skipped

    def restore_row(self, row):
        uid = row.get('Animal UID', '')
        label = row.get('Tag Number') or uid or '?'
        try:
            with db.session.begin_nested():
                if uid and uid in self.uid_map:
                    raise BackupFormatError(f'Animal UID {uid} appears more than once in the backup')

                animal_type = normalize_animal_type(row.get('Type'))
                animal = self.find_duplicate(row, animal_type)
                is_new = animal is None
                if is_new:
                    animal = self.insert_animal(row, animal_type)

                added, skipped = self.merge_medical_history(animal, row.get('Medical History'))
                db.session.flush()
        except (HerdInfoError, SQLAlchemyError, ValueError) as e:
            message = getattr(e, 'message', None) or str(e)
            self.error(f'Error processing animal {label}: {message}')
            return

        if is_new:
            self.summary.animals_added += 1
            self.added.append((row, animal))
        else:
            self.summary.animals_skipped += 1
            self.claimed.add(animal.id)
        self.summary.medical_history_added += added
        self.summary.medical_history_skipped += skipped
        if uid:
            self.uid_map[uid] = animal

    # parentage

    def resolve_parent(self, rows, row, tag):
        if not tag:
            return None
        own_uid = row.get('Animal UID')
        for other in rows:
            if other.get('Tag Number') == tag and other.get('Animal UID') != own_uid:
                target = self.uid_map.get(other.get('Animal UID'))
                if target is not None:
                    return target
        # Fall back to an animal already on the ranch, but only when the tag is unique there.
        matches = [a for (existing_tag, _), animals in self.existing_by_tag.items() if existing_tag == tag
                   for a in animals]
        return matches[0] if len(matches) == 1 else None

    def link_parents(self, rows):
        for row, animal in self.added:
            mother = self.resolve_parent(rows, row, row.get('Mother Tag'))
            father = self.resolve_parent(rows, row, row.get('Father Tag'))
            if mother is not None and mother is not animal:
                animal.mother_id = mother.id
            if father is not None and father is not animal:
                animal.father_id = father.id
        db.session.flush()

    # photos

    def restore_photos(self):
        known_hashes = {}
        names = sorted(n for n in self.zf.namelist() if n.startswith(PHOTOS_FOLDER) and not n.endswith('/'))
        if names:
            logger.info("Restoring %d photos into ranch %s", len(names), self.ranch.id)

        for name in names:
            filename = name[len(PHOTOS_FOLDER):]
            backup_animal_id = filename.split('_', 1)[0]
            animal = self.uid_map.get(backup_animal_id)
            if animal is None:
                self.summary.photos_skipped += 1
                logger.warning("Photo %s does not belong to a restored animal; skipping", name)
                continue

            data = self.zf.read(name)
            content_hash = hashlib.sha256(data).hexdigest()
            hashes = known_hashes.setdefault(animal.id, {p.content_hash for p in animal.photos if p.content_hash})
            if content_hash in hashes:
                self.summary.photos_skipped += 1
                continue

            extension = filename.rsplit('.', 1)[-1].lower() if '.' in filename else 'jpg'
            storage_path = f"{self.ranch.id}/{animal.id}/{content_hash[:32]}.{extension}"
            try:
                self.storage.save(storage_path, data)
            except (OSError, ValueError) as e:
                self.error(f'Failed to restore photo {filename}: {e}')
                continue

            db.session.add(AnimalPhoto(
                animal=animal,
                ranch_id=self.ranch.id,
                storage_path=storage_path,
                file_size_bytes=len(data),
                content_hash=content_hash,
            ))
            hashes.add(content_hash)
            self.summary.photos_added += 1


def restore_backup(data, ranch, storage, user=None):
    """
    Restores a backup archive (bytes) into `ranch` and returns a RestoreSummary.
    Raises BackupFormatError when the archive itself is unusable.
    """
    try:
        zf = zipfile.ZipFile(io.BytesIO(data))
    except zipfile.BadZipFile:
        raise BackupFormatError('The uploaded file is not a valid zip archive.')

    with zf:
        if METADATA_NAME in zf.namelist():
            try:
                metadata = json.loads(zf.read(METADATA_NAME))
                logger.info("Restoring backup v%s of ranch '%s' into ranch %s",
                            metadata.get('version'), metadata.get('ranch_name'), ranch.id)
            except ValueError:
                logger.warning("Ignoring unreadable %s", METADATA_NAME)

        rows, custom_headers = read_backup_rows(zf)
        restore = _Restore(zf, ranch, storage, user)
        restore.prepare_custom_fields(rows, custom_headers)

        for row in rows:
            restore.restore_row(row)

        restore.link_parents(rows)
        restore.restore_photos()

    db.session.commit()
    logger.info("Restore into ranch %s finished: %s", ranch.id, restore.summary.to_dict())
    return restore.summary

"""
Tests for the comprehensive backup archive and restoring it.
"""

from datetime import date, timedelta
import csv
import hashlib
import io
import json
import zipfile

import pytest

from herdinfo import db
from herdinfo.backup import (
    create_backup, restore_backup, backup_filename, generate_backup_csv, parse_medical_history,
    CSV_NAME, METADATA_NAME, STANDARD_HEADERS, BACKUP_FORMAT_VERSION,
)
from herdinfo.errors import BackupFormatError
from herdinfo.models import (Animal, AnimalPhoto, CustomFieldDefinition, CustomFieldValue, MedicalHistory)
from herdinfo.utils import create_ranch


@pytest.fixture
def herd(ranch, make_animal, storage):
    """A small herd: a cow with a calf, medical history, a custom field and a photo."""
    cow = make_animal(tag_number='A1', name='Bessie', sex='COW', birth_date=date(2018, 3, 1), weight_lbs=1100.0)
    bull = make_animal(tag_number='B7', sex='BULL')
    calf = make_animal(tag_number='A2', sex='HEIFER', birth_date=date(2024, 4, 1), mother_id=cow.id, father_id=bull.id)

    db.session.add_all([
        MedicalHistory(animal_id=cow.id, ranch_id=ranch.id, date=date(2021, 5, 1), description='Vaccinated'),
        MedicalHistory(animal_id=cow.id, ranch_id=ranch.id, date=date(2020, 1, 2), description='Dewormed'),
    ])
    breed = CustomFieldDefinition(ranch_id=ranch.id, field_name='Breed', field_type='text')
    db.session.add(breed)
    db.session.flush()
    db.session.add(CustomFieldValue(animal_id=cow.id, field_id=breed.id, value='Angus'))

    storage.save(f'{ranch.id}/{cow.id}/abc.jpg', b'cow-photo-bytes')
    db.session.add(AnimalPhoto(animal_id=cow.id, ranch_id=ranch.id, storage_path=f'{ranch.id}/{cow.id}/abc.jpg',
                               file_size_bytes=15, content_hash=hashlib.sha256(b'cow-photo-bytes').hexdigest()))
    db.session.commit()
    return {'cow': cow, 'bull': bull, 'calf': calf}


@pytest.fixture
def other_ranch(owner):
    ranch = create_ranch('Other Ranch', owner=owner, license_type='full',
                         license_expiration=date.today() + timedelta(days=30), max_animals=50)
    db.session.commit()
    return ranch


def read_archive(data):
    zf = zipfile.ZipFile(io.BytesIO(data))
    rows = list(csv.DictReader(io.StringIO(zf.read(CSV_NAME).decode('utf-8'))))
    return zf, rows


# =============================================================================
# Backup
# =============================================================================

class TestBackup:

    def test_archive_contents(self, ranch, herd, storage):
        data = create_backup(ranch, storage)
        zf, rows = read_archive(data)

        metadata = json.loads(zf.read(METADATA_NAME))
        assert metadata['version'] == BACKUP_FORMAT_VERSION
        assert metadata['ranch_name'] == 'Test Ranch'
        assert metadata['animal_count'] == 3
        assert metadata['photo_count'] == 1

        cow = herd['cow']
        assert f"photos/{cow.id}_A1_{cow.photos[0].id}.jpg" in zf.namelist()
        assert zf.read(f"photos/{cow.id}_A1_{cow.photos[0].id}.jpg") == b'cow-photo-bytes'

        by_tag = {r['Tag Number']: r for r in rows}
        assert by_tag['A1']['Medical History'] == '2020-01-02: Dewormed | 2021-05-01: Vaccinated'
        assert by_tag['A1']['Breed'] == 'Angus'
        assert by_tag['A1']['Photo Count'] == '1'
        assert by_tag['A2']['Mother Tag'] == 'A1'
        assert by_tag['A2']['Father Tag'] == 'B7'
        assert by_tag['A1']['Animal UID'] == str(cow.id)

    def test_header_row(self, ranch, herd):
        custom_fields = CustomFieldDefinition.query.filter_by(ranch_id=ranch.id).all()
        text = generate_backup_csv(Animal.query.filter_by(ranch_id=ranch.id).all(), custom_fields)
        assert text.splitlines()[0].split(',') == STANDARD_HEADERS + ['Breed']

    def test_stamps_last_backup_date(self, ranch, herd, storage):
        assert ranch.last_backup_date is None
        create_backup(ranch, storage)
        assert ranch.last_backup_date is not None

    def test_unreadable_photo_is_skipped(self, ranch, herd, storage):
        storage.objects.clear()
        zf, rows = read_archive(create_backup(ranch, storage))
        assert not [n for n in zf.namelist() if n.startswith('photos/')]
        assert len(rows) == 3

    def test_backup_filename(self, ranch):
        assert backup_filename(ranch, date(2025, 1, 31)) == 'Test_Ranch_Complete_Backup_2025-01-31.zip'


def test_parse_medical_history():
    assert parse_medical_history('2020-01-02: Dewormed | 2021-05-01: Vaccinated: 7-way') == [
        ('2020-01-02', 'Dewormed'), ('2021-05-01', 'Vaccinated: 7-way'),
    ]
    assert parse_medical_history('') == []
    assert parse_medical_history('no separator here') == []


# =============================================================================
# Restore
# =============================================================================

class TestRestore:

    def test_restore_into_empty_ranch(self, ranch, herd, other_ranch, storage):
        data = create_backup(ranch, storage)

        summary = restore_backup(data, other_ranch, storage)

        assert summary.animals_added == 3
        assert summary.animals_skipped == 0
        assert summary.medical_history_added == 2
        assert summary.custom_fields_added == 1
        assert summary.photos_added == 1
        assert summary.errors == []

        restored = {a.tag_number: a for a in Animal.query.filter_by(ranch_id=other_ranch.id).all()}
        assert set(restored) == {'A1', 'A2', 'B7'}
        assert restored['A1'].id != herd['cow'].id
        assert restored['A1'].name == 'Bessie'
        assert restored['A1'].birth_date == date(2018, 3, 1)
        assert restored['A1'].weight_lbs == 1100.0
        assert restored['A2'].mother_id == restored['A1'].id
        assert restored['A2'].father_id == restored['B7'].id

        breed = CustomFieldDefinition.query.filter_by(ranch_id=other_ranch.id, field_name='Breed').one()
        assert breed.field_type == 'text'
        assert restored['A1'].custom_values[0].value == 'Angus'

        photo = restored['A1'].photos[0]
        assert photo.storage_path.startswith(f'{other_ranch.id}/{restored["A1"].id}/')
        assert storage.read(photo.storage_path) == b'cow-photo-bytes'

    def test_restore_into_same_ranch_merges_instead_of_duplicating(self, ranch, herd, storage):
        data = create_backup(ranch, storage)
        # A treatment recorded in the backup is gone now; restoring should bring it back.
        MedicalHistory.query.filter_by(description='Dewormed').delete()
        db.session.commit()

        summary = restore_backup(data, ranch, storage)

        assert summary.animals_added == 0
        assert summary.animals_skipped == 3
        assert summary.medical_history_added == 1
        assert summary.medical_history_skipped == 1
        assert summary.custom_fields_added == 0
        assert summary.photos_added == 0
        assert summary.photos_skipped == 1
        assert Animal.query.filter_by(ranch_id=ranch.id).count() == 3
        assert len(herd['cow'].medical_history) == 2

    def test_restoring_twice_is_idempotent(self, ranch, herd, other_ranch, storage):
        data = create_backup(ranch, storage)
        restore_backup(data, other_ranch, storage)

        summary = restore_backup(data, other_ranch, storage)

        assert summary.animals_added == 0
        assert summary.animals_skipped == 3
        assert summary.medical_history_added == 0
        assert summary.photos_added == 0
        assert AnimalPhoto.query.filter_by(ranch_id=other_ranch.id).count() == 1

    def test_bad_rows_are_reported_and_skipped(self, other_ranch, storage):
        data = make_archive(
            'Animal UID,Tag Number,Type,Birth Date\n'
            '1,T1,Cattle,2020-01-01\n'
            '2,T2,Unicorn,2020-01-01\n'
            '3,T3,Cattle,01/02/2020\n'
            '4,T4,Goat,\n'
        )

        summary = restore_backup(data, other_ranch, storage)

        assert summary.animals_added == 2
        assert len(summary.errors) == 2
        assert 'T2' in summary.errors[0]
        assert 'T3' in summary.errors[1]
        assert {a.tag_number for a in Animal.query.filter_by(ranch_id=other_ranch.id).all()} == {'T1', 'T4'}

    def test_failed_row_is_rolled_back_after_its_animal_was_written(self, other_ranch, storage):
        data = make_archive(
            'Animal UID,Tag Number,Type,Medical History\n'
            '1,T1,Cattle,2020-01-01: Vaccinated\n'
            '2,T2,Cattle,2020-01-01: Dewormed | 2020-13-45: Bad date\n'
            '3,T3,Cattle,2021-02-02: Hoof trim\n'
        )

        summary = restore_backup(data, other_ranch, storage)

        assert summary.animals_added == 2
        assert len(summary.errors) == 1
        assert 'T2' in summary.errors[0]
        assert sorted(a.tag_number for a in Animal.query.filter_by(ranch_id=other_ranch.id).all()) == ['T1', 'T3']
        assert MedicalHistory.query.filter_by(ranch_id=other_ranch.id).count() == 2

    def test_reused_tags_restore_twice_without_mixing_histories(self, other_ranch, storage):
        data = make_archive(
            'Animal UID,Tag Number,Type,Status,Medical History\n'
            '901,T5,Cattle,SOLD,2019-04-01: old cow treatment\n'
            '902,T5,Cattle,PRESENT,2024-04-01: new heifer treatment\n'
        )
        restore_backup(data, other_ranch, storage)

        summary = restore_backup(data, other_ranch, storage)

        assert summary.animals_added == 0
        assert summary.animals_skipped == 2
        assert summary.medical_history_added == 0
        animals = {a.status: a for a in Animal.query.filter_by(ranch_id=other_ranch.id, tag_number='T5').all()}
        assert set(animals) == {'SOLD', 'PRESENT'}
        assert [m.description for m in animals['SOLD'].medical_history] == ['old cow treatment']
        assert [m.description for m in animals['PRESENT'].medical_history] == ['new heifer treatment']

    def test_ambiguous_tag_is_restored_as_a_new_animal(self, ranch, make_animal, storage):
        make_animal(tag_number='T9', status='SOLD')
        make_animal(tag_number='T9', status='SOLD')

        summary = restore_backup(make_archive('Animal UID,Tag Number,Status\n5000,T9,SOLD\n'), ranch, storage)

        assert summary.animals_added == 1
        assert Animal.query.filter_by(ranch_id=ranch.id, tag_number='T9').count() == 3

    def test_duplicate_uid_in_backup_is_an_error(self, other_ranch, storage):
        data = make_archive('Animal UID,Tag Number\n5,X1\n5,X2\n')
        summary = restore_backup(data, other_ranch, storage)
        assert summary.animals_added == 1
        assert 'more than once' in summary.errors[0]

    def test_not_a_zip(self, other_ranch, storage):
        with pytest.raises(BackupFormatError):
            restore_backup(b'definitely not a zip', other_ranch, storage)

    def test_zip_without_csv(self, other_ranch, storage):
        mem_file = io.BytesIO()
        with zipfile.ZipFile(mem_file, 'w') as zf:
            zf.writestr('readme.txt', 'hello')
        with pytest.raises(BackupFormatError):
            restore_backup(mem_file.getvalue(), other_ranch, storage)

    def test_csv_missing_required_columns(self, other_ranch, storage):
        with pytest.raises(BackupFormatError) as excinfo:
            restore_backup(make_archive('Name,Type\nBessie,Cattle\n'), other_ranch, storage)
        assert 'Animal UID' in excinfo.value.message


def make_archive(csv_text):
    mem_file = io.BytesIO()
    with zipfile.ZipFile(mem_file, 'w') as zf:
        zf.writestr(CSV_NAME, csv_text)
    return mem_file.getvalue()

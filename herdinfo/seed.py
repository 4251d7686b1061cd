from datetime import date, timedelta
import logging
import random

from sqlalchemy import delete, select

from . import db
from .models import (Ranch, User, UserRanch, Animal, MedicalHistory, AnimalPhoto, CustomFieldValue,
                     CustomFieldDefinition, Drug, Invitation, LicenseKey, RanchSettings)
from .utils import create_ranch

logger = logging.getLogger(__name__)

DEMO_RANCH_NAME = 'Demo Ranch'
DEMO_USER_EMAIL = 'demo@example.com'
DEMO_MAX_ANIMALS = 100

DEMO_HERD = [
    ('Cattle', 'BULL'), ('Cattle', 'COW'), ('Cattle', 'STEER'), ('Cattle', 'HEIFER'),
    ('Cattle', 'COW'), ('Cattle', 'STEER'),
    ('Pig', 'BOAR'), ('Pig', 'SOW'), ('Pig', 'BARROW'), ('Pig', 'GILT'), ('Pig', 'SOW'), ('Pig', 'BARROW'),
    ('Horse', 'STALLION'), ('Horse', 'MARE'), ('Horse', 'GELDING'), ('Horse', 'MARE'),
    ('Sheep', 'RAM'), ('Sheep', 'EWE'), ('Sheep', 'WETHER'), ('Sheep', 'EWE'),
    ('Goat', 'BUCK'), ('Goat', 'DOE'), ('Goat', 'WETHER'), ('Goat', 'DOE'),
]

# (type, calf sex, dam sex, sire sex); parents are the first matching animals of DEMO_HERD
DEMO_CALVES = [
    ('Cattle', 'HEIFER', 'COW', 'BULL'), ('Cattle', 'STEER', 'COW', 'BULL'),
    ('Pig', 'GILT', 'SOW', 'BOAR'), ('Horse', 'FILLY', 'MARE', 'STALLION'),
    ('Sheep', 'LAMB', 'EWE', 'RAM'), ('Goat', 'KID', 'DOE', 'BUCK'),
]

DEMO_TREATMENTS = ['Vaccinated - Blackleg 7-way', 'Dewormed', 'Hoof trim', 'Pinkeye treatment', 'Annual vet check']
DEMO_NAMES = ['Daisy', 'Duke', 'Rosie', 'Buck', 'Clover', 'Ranger', 'Maple', 'Scout', 'Hazel', 'Blue']


def delete_ranch_data(ranch_id):
    """
    Bulk-deletes a ranch and everything in it, children before parents.
    Photo blobs are not touched. Does not commit.
    """
    animal_ids = select(Animal.id).where(Animal.ranch_id == ranch_id)
    field_ids = select(CustomFieldDefinition.id).where(CustomFieldDefinition.ranch_id == ranch_id)

    db.session.execute(delete(CustomFieldValue).where(CustomFieldValue.animal_id.in_(animal_ids)))
    db.session.execute(delete(CustomFieldValue).where(CustomFieldValue.field_id.in_(field_ids)))
    db.session.execute(delete(MedicalHistory).where(MedicalHistory.ranch_id == ranch_id))
    db.session.execute(delete(AnimalPhoto).where(AnimalPhoto.ranch_id == ranch_id))
    db.session.execute(delete(Animal).where(Animal.ranch_id == ranch_id))
    db.session.execute(delete(CustomFieldDefinition).where(CustomFieldDefinition.ranch_id == ranch_id))
    db.session.execute(delete(Drug).where(Drug.ranch_id == ranch_id))
    db.session.execute(delete(Invitation).where(Invitation.ranch_id == ranch_id))
    db.session.execute(delete(UserRanch).where(UserRanch.ranch_id == ranch_id))
    db.session.execute(delete(RanchSettings).where(RanchSettings.ranch_id == ranch_id))
    db.session.execute(LicenseKey.__table__.update()
                       .where(LicenseKey.used_by_ranch_id == ranch_id)
                       .values(used_by_ranch_id=None))
    db.session.execute(delete(Ranch).where(Ranch.id == ranch_id))


def setup_demo_ranch(owner=None, today=None, seed=None):
    """
    (Re)creates the demo ranch: a demo license, a read-only demo user and a small
    mixed herd with a few calves and some medical history. An existing demo ranch is wiped first.
    """
    today = today or date.today()
    rng = random.Random(seed)

    owner_id = owner.id if owner is not None else None
    existing = Ranch.query.filter_by(name=DEMO_RANCH_NAME).first()
    if existing:
        logger.info("Demo ranch exists (id %s); deleting it", existing.id)
        delete_ranch_data(existing.id)
        db.session.commit()
        # Bulk deletes bypass the identity map.
        db.session.expunge_all()
        owner = db.session.get(User, owner_id) if owner_id is not None else None

    demo_user = User.query.filter_by(email=DEMO_USER_EMAIL).first()
    if demo_user is None:
        demo_user = User(email=DEMO_USER_EMAIL, name='Demo User')
        db.session.add(demo_user)
        db.session.flush()

    ranch = create_ranch(
        DEMO_RANCH_NAME,
        owner=owner,
        location='Amador County, CA',
        license_type='demo',
        license_expiration=today + timedelta(days=365),
        max_animals=DEMO_MAX_ANIMALS,
    )
    if owner is None or owner.id != demo_user.id:
        db.session.add(UserRanch(user_id=demo_user.id, ranch_id=ranch.id, role='VIEWER'))

    first_of = {}
    for index, (animal_type, sex) in enumerate(DEMO_HERD, start=1):
        birth_date = today - timedelta(days=rng.randint(200, 3000))
        animal = Animal(
            ranch_id=ranch.id,
            animal_type=animal_type,
            sex=sex,
            source=rng.choice(['BORN', 'PURCHASED']),
            status='PRESENT',
            tag_number=f'{100 + index}',
            tag_color=rng.choice(['Yellow', 'Green', 'Orange', 'White']),
            name=rng.choice(DEMO_NAMES),
            birth_date=birth_date,
            weight_lbs=round(rng.uniform(150, 1400), 1),
        )
        db.session.add(animal)
        first_of.setdefault((animal_type, sex), animal)
        for _ in range(rng.randint(0, 3)):
            db.session.add(MedicalHistory(
                animal=animal,
                ranch_id=ranch.id,
                date=birth_date + timedelta(days=rng.randint(30, (today - birth_date).days)),
                description=rng.choice(DEMO_TREATMENTS),
            ))

    for offset, (animal_type, sex, dam_sex, sire_sex) in enumerate(DEMO_CALVES, start=len(DEMO_HERD) + 1):
        db.session.add(Animal(
            ranch_id=ranch.id,
            animal_type=animal_type,
            sex=sex,
            source='BORN',
            status='PRESENT',
            tag_number=f'{100 + offset}',
            birth_date=today - timedelta(days=rng.randint(30, 150)),
            weight_lbs=round(rng.uniform(40, 300), 1),
            mother=first_of[(animal_type, dam_sex)],
            father=first_of[(animal_type, sire_sex)],
        ))

    db.session.commit()
    logger.info("Demo ranch created with id %s and %d animals", ranch.id, len(DEMO_HERD) + len(DEMO_CALVES))
    return ranch

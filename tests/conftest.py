"""Shared fixtures: an app on an in-memory database with an in-memory photo store."""

from datetime import date, timedelta

import pytest

from herdinfo import create_app, db
from herdinfo.models import User, Admin, Animal, Drug
from herdinfo.storage import InMemoryPhotoStorage
from herdinfo.utils import create_ranch


@pytest.fixture
def app():
    """Create an app bound to a fresh in-memory SQLite database."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite://',
        'PHOTO_STORAGE': InMemoryPhotoStorage(),
        'LOG_LEVEL': 'DEBUG',
    })
    with app.app_context():
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def storage(app):
    return app.extensions['photo_storage']


@pytest.fixture
def owner(app):
    """A user who owns the test ranch."""
    user = User(email='owner@example.com', name='Ranch Owner')
    db.session.add(user)
    db.session.commit()
    return user


@pytest.fixture
def admin(app):
    """A system administrator."""
    user = User(email='admin@example.com', name='System Admin')
    db.session.add(user)
    db.session.flush()
    db.session.add(Admin(user_id=user.id))
    db.session.commit()
    return user


@pytest.fixture
def ranch(owner):
    """A ranch with a full license valid for another year."""
    ranch = create_ranch(
        'Test Ranch',
        owner=owner,
        license_type='full',
        license_expiration=date.today() + timedelta(days=365),
        max_animals=50,
        active_license_key='TESTKEY',
    )
    db.session.commit()
    return ranch


@pytest.fixture
def make_animal(ranch):
    """Factory for animals on the test ranch."""
    def _make_animal(target_ranch=None, **fields):
        fields.setdefault('animal_type', 'Cattle')
        fields.setdefault('status', 'PRESENT')
        animal = Animal(ranch_id=(target_ranch or ranch).id, **fields)
        db.session.add(animal)
        db.session.commit()
        return animal
    return _make_animal


@pytest.fixture
def drug(ranch):
    drug = Drug(ranch_id=ranch.id, drug_name='LA-200', animal_type='Cattle', ccs_per_pound=0.045)
    db.session.add(drug)
    db.session.commit()
    return drug


@pytest.fixture
def owner_headers(owner):
    return {'X-User-Id': str(owner.id)}


@pytest.fixture
def admin_headers(admin):
    return {'X-User-Id': str(admin.id)}

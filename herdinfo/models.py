from datetime import date, datetime, timezone

from . import db


def utcnow():
    """Naive UTC timestamp; SQLite drops tzinfo on the way back anyway."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _iso(value):
    return value.isoformat() if value else None


ROLES = ['OWNER', 'ADMIN', 'MANAGER', 'RANCHHAND', 'VIEWER', 'VET']
WRITE_ROLES = ['OWNER', 'ADMIN', 'MANAGER', 'RANCHHAND', 'VET']
ANIMAL_STATUSES = ['PRESENT', 'SOLD', 'BUTCHERED', 'DEAD']
ANIMAL_SOURCES = ['BORN', 'PURCHASED']
CUSTOM_FIELD_TYPES = ['text', 'dollar', 'integer', 'decimal']
LICENSE_TYPES = ['full', 'demo']


class User(db.Model):
    """A person who can sign in and belong to one or more ranches."""
    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(255), unique=True, nullable=False)
    name = db.Column(db.String(100), nullable=False)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    memberships = db.relationship('UserRanch', backref='user', lazy=True, cascade="all, delete-orphan")

    @property
    def is_admin(self):
        return db.session.get(Admin, self.id) is not None

    def to_dict(self):
        return {'id': self.id, 'email': self.email, 'name': self.name, 'is_admin': self.is_admin}

    def __repr__(self):
        return f'<User {self.email}>'


class Admin(db.Model):
    """Marks a user as a system administrator (license keys, ranch-creation invitations)."""
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), primary_key=True)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)


class Ranch(db.Model):
    """A single ranch; the top-level container for all herd data."""
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), nullable=False)
    location = db.Column(db.String(255), nullable=True)
    contact_name = db.Column(db.String(100), nullable=True)
    contact_email = db.Column(db.String(255), nullable=True)
    contact_phone = db.Column(db.String(50), nullable=True)

    # --- Licensing ---
    active_license_key = db.Column(db.String(64), nullable=True)
    license_type = db.Column(db.String(10), nullable=True)
    license_expiration = db.Column(db.Date, nullable=True)
    license_activated_at = db.Column(db.DateTime, nullable=True)
    max_animals = db.Column(db.Integer, nullable=True)

    last_backup_date = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    # --- Relationships ---
    # Deleting a ranch deletes everything that belongs to it.
    settings = db.relationship('RanchSettings', backref='ranch', uselist=False, lazy=True, cascade="all, delete-orphan")
    members = db.relationship('UserRanch', backref='ranch', lazy=True, cascade="all, delete-orphan")
    animals = db.relationship('Animal', backref='ranch', lazy=True, cascade="all, delete-orphan")
    custom_fields = db.relationship('CustomFieldDefinition', backref='ranch', lazy=True,
                                    cascade="all, delete-orphan", order_by='CustomFieldDefinition.display_order')
    drugs = db.relationship('Drug', backref='ranch', lazy=True, cascade="all, delete-orphan")
    invitations = db.relationship('Invitation', backref='ranch', lazy=True, cascade="all, delete-orphan")

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'location': self.location,
            'contact_name': self.contact_name,
            'contact_email': self.contact_email,
            'contact_phone': self.contact_phone,
            'license_type': self.license_type,
            'license_expiration': _iso(self.license_expiration),
            'license_activated_at': _iso(self.license_activated_at),
            'max_animals': self.max_animals,
            'last_backup_date': _iso(self.last_backup_date),
            'created_at': _iso(self.created_at),
        }

    def __repr__(self):
        return f'<Ranch {self.name}>'


class RanchSettings(db.Model):
    """Per-ranch preferences: report header lines, adult ages and feature toggles."""
    ranch_id = db.Column(db.Integer, db.ForeignKey('ranch.id'), primary_key=True)
    report_line1 = db.Column(db.String(255), default='', nullable=False)
    report_line2 = db.Column(db.String(255), default='', nullable=False)
    adult_age_years = db.Column(db.Float, default=2.0, nullable=False)
    time_zone = db.Column(db.String(64), default='America/Los_Angeles', nullable=False)
    default_animal_type = db.Column(db.String(20), default='Cattle', nullable=False)
    cattle_adult_age = db.Column(db.Float, default=2.0, nullable=False)
    horse_adult_age = db.Column(db.Float, default=4.0, nullable=False)
    sheep_adult_age = db.Column(db.Float, default=1.0, nullable=False)
    goat_adult_age = db.Column(db.Float, default=1.0, nullable=False)
    pig_adult_age = db.Column(db.Float, default=0.75, nullable=False)
    enable_injection_feature = db.Column(db.Boolean, default=False, nullable=False)
    print_program = db.Column(db.String(255), default='', nullable=True)

    EDITABLE_FIELDS = (
        'report_line1', 'report_line2', 'adult_age_years', 'time_zone', 'default_animal_type',
        'cattle_adult_age', 'horse_adult_age', 'sheep_adult_age', 'goat_adult_age', 'pig_adult_age',
        'enable_injection_feature', 'print_program',
    )

    def to_dict(self):
        data = {'ranch_id': self.ranch_id}
        for field in self.EDITABLE_FIELDS:
            data[field] = getattr(self, field)
        return data


class UserRanch(db.Model):
    """Membership of a user in a ranch, with the role they hold there."""
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), primary_key=True)
    ranch_id = db.Column(db.Integer, db.ForeignKey('ranch.id'), primary_key=True)
    role = db.Column(db.String(20), nullable=False)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    def to_dict(self):
        return {
            'user_id': self.user_id,
            'ranch_id': self.ranch_id,
            'role': self.role,
            'user_name': self.user.name if self.user else None,
            'user_email': self.user.email if self.user else None,
        }


class Animal(db.Model):
    """A single animal in a ranch's herd."""
    id = db.Column(db.Integer, primary_key=True)
    ranch_id = db.Column(db.Integer, db.ForeignKey('ranch.id'), nullable=False)
    legacy_uid = db.Column(db.String(64), nullable=True)
    animal_type = db.Column(db.String(20), default='Cattle', nullable=False)
    source = db.Column(db.String(10), default='BORN', nullable=False)
    status = db.Column(db.String(10), default='PRESENT', nullable=False)
    tag_number = db.Column(db.String(50), nullable=True)
    tag_color = db.Column(db.String(30), nullable=True)
    name = db.Column(db.String(100), nullable=True)
    sex = db.Column(db.String(10), nullable=True)
    description = db.Column(db.Text, nullable=True)
    birth_date = db.Column(db.Date, nullable=True)
    weaning_date = db.Column(db.Date, nullable=True)
    exit_date = db.Column(db.Date, nullable=True)
    weight_lbs = db.Column(db.Float, nullable=True)
    sale_price = db.Column(db.Float, nullable=True)
    purchase_date = db.Column(db.Date, nullable=True)
    purchase_price = db.Column(db.Float, nullable=True)
    notes = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    # --- Parentage ---
    mother_id = db.Column(db.Integer, db.ForeignKey('animal.id', ondelete='SET NULL'), nullable=True)
    father_id = db.Column(db.Integer, db.ForeignKey('animal.id', ondelete='SET NULL'), nullable=True)
    mother = db.relationship('Animal', remote_side=[id], foreign_keys=[mother_id])
    father = db.relationship('Animal', remote_side=[id], foreign_keys=[father_id])

    # --- History ---
    medical_history = db.relationship('MedicalHistory', backref='animal', lazy=True,
                                      cascade="all, delete-orphan", order_by='MedicalHistory.date')
    photos = db.relationship('AnimalPhoto', backref='animal', lazy=True, cascade="all, delete-orphan")
    custom_values = db.relationship('CustomFieldValue', backref='animal', lazy=True, cascade="all, delete-orphan")

    EDITABLE_FIELDS = (
        'legacy_uid', 'animal_type', 'source', 'status', 'tag_number', 'tag_color', 'name', 'sex',
        'description', 'birth_date', 'weaning_date', 'exit_date', 'weight_lbs', 'sale_price',
        'purchase_date', 'purchase_price', 'notes', 'mother_id', 'father_id',
    )

    @property
    def is_present(self):
        return self.status == 'PRESENT'

    def to_dict(self):
        return {
            'id': self.id,
            'ranch_id': self.ranch_id,
            'legacy_uid': self.legacy_uid,
            'animal_type': self.animal_type,
            'source': self.source,
            'status': self.status,
            'tag_number': self.tag_number,
            'tag_color': self.tag_color,
            'name': self.name,
            'sex': self.sex,
            'description': self.description,
            'birth_date': _iso(self.birth_date),
            'weaning_date': _iso(self.weaning_date),
            'exit_date': _iso(self.exit_date),
            'weight_lbs': self.weight_lbs,
            'sale_price': self.sale_price,
            'purchase_date': _iso(self.purchase_date),
            'purchase_price': self.purchase_price,
            'notes': self.notes,
            'mother_id': self.mother_id,
            'father_id': self.father_id,
            'mother_tag': self.mother.tag_number if self.mother else None,
            'father_tag': self.father.tag_number if self.father else None,
            'photo_count': len(self.photos),
        }

    def to_master_record(self):
        """The full animal record: core data plus history, photos and custom fields."""
        data = self.to_dict()
        data['medical_history'] = [m.to_dict() for m in self.medical_history]
        data['photos'] = [p.to_dict() for p in self.photos]
        data['custom_fields'] = {v.field.field_name: v.value for v in self.custom_values if v.field}
        return data

    def __repr__(self):
        return f'<Animal {self.tag_number or self.id} ({self.animal_type})>'


class MedicalHistory(db.Model):
    """One dated medical note (treatment, injection, vet visit) for an animal."""
    id = db.Column(db.Integer, primary_key=True)
    animal_id = db.Column(db.Integer, db.ForeignKey('animal.id'), nullable=False)
    ranch_id = db.Column(db.Integer, db.ForeignKey('ranch.id'), nullable=False)
    date = db.Column(db.Date, nullable=False)
    description = db.Column(db.Text, nullable=False)
    created_by_user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    def to_dict(self):
        return {
            'id': self.id,
            'animal_id': self.animal_id,
            'tag_number': self.animal.tag_number if self.animal else None,
            'ranch_id': self.ranch_id,
            'date': self.date.isoformat(),
            'description': self.description,
            'created_by_user_id': self.created_by_user_id,
        }

    def __repr__(self):
        return f'<MedicalHistory for animal {self.animal_id} on {self.date}>'


class AnimalPhoto(db.Model):
    """Metadata for a photo blob kept in the photo store."""
    id = db.Column(db.Integer, primary_key=True)
    animal_id = db.Column(db.Integer, db.ForeignKey('animal.id'), nullable=False)
    ranch_id = db.Column(db.Integer, db.ForeignKey('ranch.id'), nullable=False)
    storage_path = db.Column(db.String(255), nullable=False)
    caption = db.Column(db.String(255), nullable=True)
    is_primary = db.Column(db.Boolean, default=False, nullable=False)
    file_size_bytes = db.Column(db.Integer, nullable=True)
    content_hash = db.Column(db.String(64), nullable=True)
    media_type = db.Column(db.String(10), default='image', nullable=False)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    @property
    def extension(self):
        return self.storage_path.rsplit('.', 1)[-1].lower() if '.' in self.storage_path else 'jpg'

    def to_dict(self):
        return {
            'id': self.id,
            'animal_id': self.animal_id,
            'ranch_id': self.ranch_id,
            'storage_path': self.storage_path,
            'caption': self.caption,
            'is_primary': self.is_primary,
            'file_size_bytes': self.file_size_bytes,
            'media_type': self.media_type,
            'created_at': _iso(self.created_at),
        }


class CustomFieldDefinition(db.Model):
    """A ranch-defined extra column on animals."""
    id = db.Column(db.Integer, primary_key=True)
    ranch_id = db.Column(db.Integer, db.ForeignKey('ranch.id'), nullable=False)
    field_name = db.Column(db.String(100), nullable=False)
    field_type = db.Column(db.String(10), default='text', nullable=False)
    include_in_totals = db.Column(db.Boolean, default=False, nullable=False)
    is_required = db.Column(db.Boolean, default=False, nullable=False)
    display_order = db.Column(db.Integer, default=0, nullable=False)

    values = db.relationship('CustomFieldValue', backref='field', lazy=True, cascade="all, delete-orphan")

    __table_args__ = (db.UniqueConstraint('ranch_id', 'field_name', name='_ranch_field_name_uc'),)

    def to_dict(self):
        return {
            'id': self.id,
            'ranch_id': self.ranch_id,
            'field_name': self.field_name,
            'field_type': self.field_type,
            'include_in_totals': self.include_in_totals,
            'is_required': self.is_required,
            'display_order': self.display_order,
        }


class CustomFieldValue(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    animal_id = db.Column(db.Integer, db.ForeignKey('animal.id'), nullable=False)
    field_id = db.Column(db.Integer, db.ForeignKey('custom_field_definition.id'), nullable=False)
    value = db.Column(db.Text, nullable=True)

    __table_args__ = (db.UniqueConstraint('animal_id', 'field_id', name='_animal_field_uc'),)

    def to_dict(self):
        return {'id': self.id, 'animal_id': self.animal_id, 'field_id': self.field_id, 'value': self.value}


class LicenseKey(db.Model):
    """A license that can be activated on exactly one ranch."""
    id = db.Column(db.Integer, primary_key=True)
    key = db.Column(db.String(64), unique=True, nullable=False)
    license_type = db.Column(db.String(10), nullable=False)
    expiration_date = db.Column(db.Date, nullable=False)
    max_animals = db.Column(db.Integer, default=50, nullable=False)
    used_by_ranch_id = db.Column(db.Integer, db.ForeignKey('ranch.id', ondelete='SET NULL'), nullable=True)
    created_by_user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    def is_available(self, today=None):
        today = today or date.today()
        return self.used_by_ranch_id is None and self.expiration_date > today

    def to_dict(self):
        return {
            'id': self.id,
            'key': self.key,
            'license_type': self.license_type,
            'expiration_date': self.expiration_date.isoformat(),
            'max_animals': self.max_animals,
            'used_by_ranch_id': self.used_by_ranch_id,
            'created_at': _iso(self.created_at),
        }

    def __repr__(self):
        return f'<LicenseKey {self.key}>'


class Invitation(db.Model):
    """
    A one-time code. A 'ranch_creation' invitation carries a license key and lets
    the redeemer create a new ranch; a 'ranch_member' invitation adds the redeemer
    to an existing ranch with a given role.
    """
    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(16), unique=True, nullable=False)
    type = db.Column(db.String(20), nullable=False)
    license_key_id = db.Column(db.Integer, db.ForeignKey('license_key.id'), nullable=True)
    ranch_id = db.Column(db.Integer, db.ForeignKey('ranch.id'), nullable=True)
    role = db.Column(db.String(20), nullable=True)
    restricted_email = db.Column(db.String(255), nullable=True)
    expires_at = db.Column(db.DateTime, nullable=False)
    used_at = db.Column(db.DateTime, nullable=True)
    used_by_user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=True)
    created_by_user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    license_key = db.relationship('LicenseKey', lazy=True)

    __table_args__ = (
        db.CheckConstraint(
            "(type = 'ranch_creation' AND license_key_id IS NOT NULL AND ranch_id IS NULL AND role IS NULL)"
            " OR (type = 'ranch_member' AND ranch_id IS NOT NULL AND role IS NOT NULL AND license_key_id IS NULL)",
            name='_invitation_type_ck',
        ),
    )

    def to_dict(self):
        return {
            'id': self.id,
            'code': self.code,
            'type': self.type,
            'license_key_id': self.license_key_id,
            'ranch_id': self.ranch_id,
            'role': self.role,
            'restricted_email': self.restricted_email,
            'expires_at': _iso(self.expires_at),
            'used_at': _iso(self.used_at),
            'used_by_user_id': self.used_by_user_id,
            'created_by_user_id': self.created_by_user_id,
            'created_at': _iso(self.created_at),
        }

    def __repr__(self):
        return f'<Invitation {self.code} ({self.type})>'


class Drug(db.Model):
    """A drug the ranch administers, with either a per-pound or a fixed dose."""
    id = db.Column(db.Integer, primary_key=True)
    ranch_id = db.Column(db.Integer, db.ForeignKey('ranch.id'), nullable=False)
    drug_name = db.Column(db.String(100), nullable=False)
    animal_type = db.Column(db.String(20), default='Cattle', nullable=False)
    ccs_per_pound = db.Column(db.Float, nullable=True)
    fixed_dose_ml = db.Column(db.Float, nullable=True)
    notes = db.Column(db.Text, nullable=True)

    __table_args__ = (db.UniqueConstraint('ranch_id', 'drug_name', name='_ranch_drug_name_uc'),)

    def to_dict(self):
        return {
            'id': self.id,
            'ranch_id': self.ranch_id,
            'drug_name': self.drug_name,
            'animal_type': self.animal_type,
            'ccs_per_pound': self.ccs_per_pound,
            'fixed_dose_ml': self.fixed_dose_ml,
            'notes': self.notes,
        }

from flask import Blueprint, request, jsonify, send_file, current_app
from datetime import date
from sqlalchemy.exc import IntegrityError
from sqlalchemy import or_
from .models import (User, Ranch, RanchSettings, UserRanch, Animal, MedicalHistory, AnimalPhoto,
                     CustomFieldDefinition, CustomFieldValue, LicenseKey, Invitation, Drug,
                     ANIMAL_STATUSES, ANIMAL_SOURCES, CUSTOM_FIELD_TYPES, WRITE_ROLES)
from . import db
from .errors import HerdInfoError, ValidationError
from .utils import (parse_date, parse_float, parse_int, blank_to_none, create_ranch, find_animals_by_tag,
                    count_present_animals, count_ranch_animals, calculate_dose, prorate_sale,
                    validate_custom_field_value)
from .animal_types import validate_animal_type_and_sex, normalize_animal_type, promote_animals
from .licensing import (check_license_status, ensure_can_add_animal, ensure_writable, create_license_key,
                        activate_license, available_license_keys, license_message)
from .invitations import (create_ranch_creation_invitation, create_ranch_member_invitation,
                          validate_invitation_code, redeem_invitation, ranch_invitations)
from .storage import get_photo_storage, is_allowed_image, file_extension, new_photo_path, ALLOWED_IMAGE_EXTENSIONS
from .csv_import import import_v1_files
from .backup import create_backup, backup_filename, restore_backup
from .reports import counts_report, offspring_by_mother_report, system_summary
from .seed import setup_demo_ranch
import hashlib
import io
import mimetypes


# Create a Blueprint. 'api' is the name of the blueprint.
api = Blueprint('api', __name__)

INVITING_ROLES = ['OWNER', 'ADMIN', 'MANAGER']


# --- Error handling ---

@api.errorhandler(HerdInfoError)
def handle_herdinfo_error(e):
    db.session.rollback()
    return jsonify(e.to_dict()), e.status_code


@api.errorhandler(404)
def handle_not_found(e):
    return jsonify({'error': 'The requested resource was not found.'}), 404


# --- Helpers ---

def current_user():
    """The acting user, taken from the X-User-Id header. None when absent or unknown."""
    user_id = request.headers.get('X-User-Id', '').strip()
    if not user_id.isdigit():
        return None
    return db.session.get(User, int(user_id))


def require_user():
    user = current_user()
    if user is None:
        raise HerdInfoError('A valid X-User-Id header is required.', status_code=401)
    return user


def require_admin():
    user = require_user()
    if not user.is_admin:
        raise HerdInfoError('Administrator access is required.', status_code=403)
    return user


def ranch_license(ranch):
    return check_license_status(ranch, date.today(), current_app.config['LICENSE_GRACE_PERIOD_DAYS'])


def get_writable_ranch(ranch_id):
    """
    Loads a ranch for a write operation: the acting user (when given) must hold a
    write role there, and the ranch license must not be read-only.
    Requests without an X-User-Id header are not role-checked; there is no
    authentication layer, so the header only narrows what a known user may do.
    """
    ranch = Ranch.query.get_or_404(ranch_id)
    user = current_user()
    if user is not None and not user.is_admin:
        membership = db.session.get(UserRanch, (user.id, ranch.id))
        if membership is None or membership.role not in WRITE_ROLES:
            raise HerdInfoError('You do not have permission to change this ranch.', status_code=403)
    ensure_writable(ranch_license(ranch))
    return ranch


def get_json_body():
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValidationError('Missing JSON request body.')
    return data


def ranch_animal_or_404(ranch_id, animal_id):
    return Animal.query.filter_by(id=animal_id, ranch_id=ranch_id).first_or_404()


def apply_animal_fields(animal, data):
    """Validates the animal fields present in `data` and copies them onto `animal`."""
    if 'animal_type' in data or 'sex' in data:
        animal_type, sex = validate_animal_type_and_sex(
            data.get('animal_type', animal.animal_type), data.get('sex', animal.sex))
        animal.animal_type = animal_type
        animal.sex = sex

    if 'status' in data:
        status = (data['status'] or 'PRESENT').strip().upper()
        if status not in ANIMAL_STATUSES:
            raise ValidationError(f"'status' must be one of: {', '.join(ANIMAL_STATUSES)}.")
        animal.status = status
    if 'source' in data:
        source = (data['source'] or 'BORN').strip().upper()
        if source not in ANIMAL_SOURCES:
            raise ValidationError(f"'source' must be one of: {', '.join(ANIMAL_SOURCES)}.")
        animal.source = source

    for field in ('legacy_uid', 'tag_number', 'tag_color', 'name', 'description', 'notes'):
        if field in data:
            setattr(animal, field, blank_to_none(data[field]))
    for field in ('birth_date', 'weaning_date', 'exit_date', 'purchase_date'):
        if field in data:
            setattr(animal, field, parse_date(data[field], field))
    for field in ('weight_lbs', 'sale_price', 'purchase_price'):
        if field in data:
            setattr(animal, field, parse_float(data[field], field))

    for field in ('mother_id', 'father_id'):
        if field in data:
            parent_id = parse_int(data[field], field)
            if parent_id is not None:
                if animal.id is not None and parent_id == animal.id:
                    raise ValidationError('An animal cannot be its own parent.')
                if Animal.query.filter_by(id=parent_id, ranch_id=animal.ranch_id).first() is None:
                    raise ValidationError(f"Parent animal {parent_id} not found on this ranch.")
            setattr(animal, field, parent_id)


def delete_photo_blobs(paths):
    storage = get_photo_storage()
    for path in paths:
        try:
            storage.delete(path)
        except (OSError, ValueError) as e:
            current_app.logger.warning("Could not delete photo blob %s: %s", path, e)


# --- General Routes ---

@api.route('/')
def home():
    """A simple test route to confirm the API is running."""
    return "The AmadorHerdInfo backend is running!"


# --- Users ---

@api.route('/user/add', methods=['POST'])
def add_user():
    """Creates a user. Expects JSON with 'email' and 'name'."""
    data = get_json_body()
    email = (data.get('email') or '').strip().lower()
    name = (data.get('name') or '').strip()
    if not email or not name:
        return jsonify({'error': "The 'email' and 'name' fields are required."}), 400
    if User.query.filter_by(email=email).first():
        return jsonify({'error': f"A user with the email '{email}' already exists."}), 409

    try:
        new_user = User(email=email, name=name)
        db.session.add(new_user)
        db.session.commit()
        return jsonify({'message': 'User created successfully!', 'user': new_user.to_dict()}), 201
    except Exception as e:
        db.session.rollback()
        return jsonify({'error': f'An unexpected error occurred: {str(e)}'}), 500


@api.route('/user/<int:user_id>/ranches', methods=['GET'])
def get_user_ranches(user_id):
    """The ranches a user belongs to, with their role and license status."""
    user = User.query.get_or_404(user_id)
    results = []
    for membership in user.memberships:
        ranch_data = membership.ranch.to_dict()
        ranch_data['role'] = membership.role
        ranch_data['license'] = ranch_license(membership.ranch).to_dict()
        results.append(ranch_data)
    results.sort(key=lambda r: r['name'].lower())
    return jsonify(results)


# --- Ranches ---

@api.route('/ranches', methods=['GET'])
def get_ranches():
    """Gets all ranches, or only the acting user's ranches when the user is not an administrator."""
    user = current_user()
    query = Ranch.query
    if user is not None and not user.is_admin:
        query = query.join(UserRanch).filter(UserRanch.user_id == user.id)
    return jsonify([ranch.to_dict() for ranch in query.order_by(Ranch.name).all()])


@api.route('/ranch/add', methods=['POST'])
def add_ranch():
    """
    Creates a ranch owned by the acting user. The ranch starts without a license
    and stays read-only until one is activated.
    """
    user = require_user()
    data = get_json_body()
    if not (data.get('name') or '').strip():
        return jsonify({'error': "The 'name' field is required."}), 400

    try:
        ranch = create_ranch(
            data['name'],
            owner=user,
            location=blank_to_none(data.get('location')),
            contact_name=blank_to_none(data.get('contact_name')),
            contact_email=blank_to_none(data.get('contact_email')),
            contact_phone=blank_to_none(data.get('contact_phone')),
        )
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        return jsonify({'error': 'Could not create the ranch because of conflicting data.'}), 409

    current_app.logger.info("User %s created ranch %s (%s)", user.id, ranch.id, ranch.name)
    return jsonify({'message': 'Ranch created successfully!', 'ranch': ranch.to_dict()}), 201


@api.route('/ranch/<int:ranch_id>', methods=['GET'])
def get_ranch(ranch_id):
    ranch = Ranch.query.get_or_404(ranch_id)
    ranch_data = ranch.to_dict()
    ranch_data['license'] = ranch_license(ranch).to_dict()
    ranch_data['present_animals'] = count_present_animals(ranch.id)
    ranch_data['animal_count'] = count_ranch_animals(ranch.id)
    return jsonify(ranch_data)


@api.route('/ranch/<int:ranch_id>/update', methods=['POST'])
def update_ranch(ranch_id):
    """Updates the name and contact details of a ranch."""
    ranch = get_writable_ranch(ranch_id)
    data = get_json_body()

    if 'name' in data:
        new_name = (data['name'] or '').strip()
        if not new_name:
            return jsonify({'error': "The 'name' field cannot be blank."}), 400
        ranch.name = new_name
    for field in ('location', 'contact_name', 'contact_email', 'contact_phone'):
        if field in data:
            setattr(ranch, field, blank_to_none(data[field]))

    try:
        db.session.commit()
        return jsonify({'message': 'Ranch updated successfully!', 'ranch': ranch.to_dict()})
    except Exception as e:
        db.session.rollback()
        return jsonify({'error': f'An unexpected error occurred: {str(e)}'}), 500


@api.route('/ranch/<int:ranch_id>/delete', methods=['DELETE'])
def delete_ranch(ranch_id):
    """Deletes a ranch with all its animals, history, photos and settings. Only owners and administrators."""
    ranch = Ranch.query.get_or_404(ranch_id)
    user = require_user()
    membership = db.session.get(UserRanch, (user.id, ranch.id))
    if not user.is_admin and (membership is None or membership.role != 'OWNER'):
        return jsonify({'error': 'Only the ranch owner can delete a ranch.'}), 403

    photo_paths = [p.storage_path for p in AnimalPhoto.query.filter_by(ranch_id=ranch.id).all()]
    ranch_name = ranch.name
    try:
        LicenseKey.query.filter_by(used_by_ranch_id=ranch.id).update({'used_by_ranch_id': None})
        # The cascades on Ranch take care of the rest.
        db.session.delete(ranch)
        db.session.commit()
    except Exception as e:
        db.session.rollback()
        return jsonify({'error': f'An unexpected error occurred: {str(e)}'}), 500

    delete_photo_blobs(photo_paths)
    current_app.logger.info("Deleted ranch %s (%s) and %d photos", ranch_id, ranch_name, len(photo_paths))
    return jsonify({'message': f"Ranch '{ranch_name}' and all its data have been deleted."})


@api.route('/ranch/<int:ranch_id>/settings', methods=['GET', 'POST'])
def ranch_settings(ranch_id):
    """Reads (GET) or updates (POST) the settings of a ranch."""
    if request.method == 'GET':
        ranch = Ranch.query.get_or_404(ranch_id)
        settings = ranch.settings or RanchSettings(ranch_id=ranch.id)
        if ranch.settings is None:
            db.session.add(settings)
            db.session.commit()
        return jsonify(settings.to_dict())

    ranch = get_writable_ranch(ranch_id)
    data = get_json_body()
    settings = ranch.settings
    if settings is None:
        settings = RanchSettings(ranch_id=ranch.id)
        db.session.add(settings)

    for field in ('adult_age_years', 'cattle_adult_age', 'horse_adult_age', 'sheep_adult_age',
                  'goat_adult_age', 'pig_adult_age'):
        if field in data:
            value = parse_float(data[field], field)
            if value is None or value < 0:
                raise ValidationError(f"'{field}' must be a non-negative number.")
            setattr(settings, field, value)
    for field in ('report_line1', 'report_line2', 'print_program'):
        if field in data:
            setattr(settings, field, (data[field] or '').strip())
    if 'time_zone' in data:
        settings.time_zone = (data['time_zone'] or '').strip() or 'America/Los_Angeles'
    if 'default_animal_type' in data:
        settings.default_animal_type = normalize_animal_type(data['default_animal_type'])
    if 'enable_injection_feature' in data:
        settings.enable_injection_feature = bool(data['enable_injection_feature'])

    db.session.commit()
    return jsonify({'message': 'Settings saved.', 'settings': settings.to_dict()})


@api.route('/ranch/<int:ranch_id>/members', methods=['GET'])
def get_ranch_members(ranch_id):
    ranch = Ranch.query.get_or_404(ranch_id)
    members = sorted(ranch.members, key=lambda m: (m.user.name or '').lower())
    return jsonify([m.to_dict() for m in members])


# --- Animals ---

@api.route('/ranch/<int:ranch_id>/animals', methods=['GET'])
def get_animals(ranch_id):
    """
    Gets the animals of a ranch. Optional query parameters: 'status',
    'animal_type' and 'q' (matched against tag number, name and description).
    """
    Ranch.query.get_or_404(ranch_id)
    query = Animal.query.filter_by(ranch_id=ranch_id)

    status = request.args.get('status')
    if status:
        query = query.filter(Animal.status == status.strip().upper())
    animal_type = request.args.get('animal_type')
    if animal_type:
        query = query.filter(Animal.animal_type == normalize_animal_type(animal_type))
    search = (request.args.get('q') or '').strip()
    if search:
        pattern = f'%{search}%'
        query = query.filter(or_(Animal.tag_number.ilike(pattern), Animal.name.ilike(pattern),
                                 Animal.description.ilike(pattern)))

    animals = query.order_by(Animal.tag_number, Animal.id).all()
    return jsonify([animal.to_dict() for animal in animals])


@api.route('/ranch/<int:ranch_id>/animal/add', methods=['POST'])
def add_animal(ranch_id):
    """
    Adds an animal. Expects JSON with the animal fields; 'animal_type' defaults
    to the ranch's default type. Refused when the license does not allow more animals;
    every animal of the ranch counts, whatever its status.
    """
    ranch = get_writable_ranch(ranch_id)
    data = get_json_body()

    new_animal = Animal(ranch_id=ranch.id)
    if 'animal_type' not in data:
        data['animal_type'] = ranch.settings.default_animal_type if ranch.settings else 'Cattle'
    apply_animal_fields(new_animal, data)
    if not new_animal.status:
        new_animal.status = 'PRESENT'

    # Sold and dead animals count against the limit as well.
    ensure_can_add_animal(ranch_license(ranch), count_ranch_animals(ranch.id))

    try:
        db.session.add(new_animal)
        db.session.commit()
        current_app.logger.info("Added animal %s (tag %s) to ranch %s", new_animal.id, new_animal.tag_number, ranch.id)
        return jsonify({'message': 'Animal added successfully!', 'animal': new_animal.to_dict()}), 201
    except IntegrityError:
        db.session.rollback()
        return jsonify({'error': 'This animal conflicts with an existing record.'}), 409
    except Exception as e:
        db.session.rollback()
        return jsonify({'error': f'An unexpected error occurred: {str(e)}'}), 500


@api.route('/ranch/<int:ranch_id>/animal/search', methods=['GET'])
def search_animal_by_tag(ranch_id):
    """Searches a ranch's animals by tag number. 'present_only=true' limits it to animals still on the ranch."""
    Ranch.query.get_or_404(ranch_id)
    tag_to_search = (request.args.get('tag') or '').strip()
    if not tag_to_search:
        return jsonify({'error': 'A tag parameter is required.'}), 400

    present_only = request.args.get('present_only', '').lower() in ('1', 'true', 'yes')
    animals = find_animals_by_tag(ranch_id, tag_to_search, present_only=present_only)
    return jsonify([animal.to_dict() for animal in animals])


@api.route('/ranch/<int:ranch_id>/animal/<int:animal_id>', methods=['GET'])
def get_animal_details(ranch_id, animal_id):
    """The master record of an animal: core data, medical history, photos, custom fields and offspring."""
    animal = ranch_animal_or_404(ranch_id, animal_id)
    record = animal.to_master_record()
    offspring = Animal.query.filter(
        Animal.ranch_id == ranch_id,
        or_(Animal.mother_id == animal.id, Animal.father_id == animal.id),
    ).order_by(Animal.birth_date).all()
    record['offspring'] = [o.to_dict() for o in offspring]
    return jsonify(record)


@api.route('/ranch/<int:ranch_id>/animal/<int:animal_id>/update', methods=['POST'])
def update_animal(ranch_id, animal_id):
    get_writable_ranch(ranch_id)
    animal = ranch_animal_or_404(ranch_id, animal_id)
    data = get_json_body()
    apply_animal_fields(animal, data)

    try:
        db.session.commit()
        return jsonify({'message': 'Animal updated successfully!', 'animal': animal.to_dict()})
    except Exception as e:
        db.session.rollback()
        return jsonify({'error': f'An unexpected error occurred: {str(e)}'}), 500


@api.route('/ranch/<int:ranch_id>/animal/<int:animal_id>/delete', methods=['DELETE'])
def delete_animal(ranch_id, animal_id):
    """Deletes an animal with its history and photos. Its offspring keep existing without that parent."""
    get_writable_ranch(ranch_id)
    animal = ranch_animal_or_404(ranch_id, animal_id)
    photo_paths = [p.storage_path for p in animal.photos]
    label = animal.tag_number or animal.id

    try:
        Animal.query.filter_by(mother_id=animal.id).update({'mother_id': None})
        Animal.query.filter_by(father_id=animal.id).update({'father_id': None})
        db.session.delete(animal)
        db.session.commit()
    except Exception as e:
        db.session.rollback()
        return jsonify({'error': f'An unexpected error occurred: {str(e)}'}), 500

    delete_photo_blobs(photo_paths)
    return jsonify({'message': f"Animal '{label}' has been deleted."})


@api.route('/ranch/<int:ranch_id>/animals/prorate_sale', methods=['POST'])
def prorate_animal_sale(ranch_id):
    """
    Spreads a total sale amount evenly over the animals sold on 'sale_date'
    (or over the given 'animal_ids') and stores each share as the sale price.
    """
    get_writable_ranch(ranch_id)
    data = get_json_body()
    if 'total_amount' not in data:
        return jsonify({'error': "The 'total_amount' field is required."}), 400

    if data.get('animal_ids'):
        animal_ids = [parse_int(a, 'animal_ids') for a in data['animal_ids']]
        animals = Animal.query.filter(Animal.ranch_id == ranch_id, Animal.id.in_(animal_ids)) \
            .order_by(Animal.id).all()
        if len(animals) != len(set(animal_ids)):
            return jsonify({'error': 'Some of the selected animals were not found on this ranch.'}), 404
    else:
        sale_date = parse_date(data.get('sale_date'), 'sale_date')
        if sale_date is None:
            return jsonify({'error': "Either 'sale_date' or 'animal_ids' is required."}), 400
        animals = Animal.query.filter_by(ranch_id=ranch_id, status='SOLD', exit_date=sale_date) \
            .order_by(Animal.id).all()

    if not animals:
        return jsonify({'error': 'No sold animals found to prorate the sale across.'}), 404

    shares = prorate_sale(data['total_amount'], len(animals))
    for animal, share in zip(animals, shares):
        animal.sale_price = share
    db.session.commit()

    return jsonify({
        'message': f"Prorated {sum(shares):.2f} across {len(animals)} animals.",
        'animals': [{'id': a.id, 'tag_number': a.tag_number, 'sale_price': a.sale_price} for a in animals],
    })


@api.route('/ranch/<int:ranch_id>/animals/promote', methods=['POST'])
def promote_ranch_animals(ranch_id):
    """Applies the sex auto-promotion rules (e.g. HEIFER to COW) to the ranch's present animals."""
    ranch = get_writable_ranch(ranch_id)
    animals = Animal.query.filter_by(ranch_id=ranch.id, status='PRESENT').all()
    promoted = promote_animals(animals, ranch.settings or RanchSettings(), date.today())
    db.session.commit()
    current_app.logger.info("Promoted %d animals on ranch %s", len(promoted), ranch.id)
    return jsonify({
        'message': f'{len(promoted)} animals promoted.',
        'promoted': [{'id': a.id, 'tag_number': a.tag_number, 'sex': a.sex} for a in promoted],
    })


# --- Medical history ---

@api.route('/ranch/<int:ranch_id>/medical_history', methods=['GET'])
def get_medical_history(ranch_id):
    """All medical history of a ranch, newest first. Optional 'start_date' and 'end_date' (YYYY-MM-DD)."""
    Ranch.query.get_or_404(ranch_id)
    query = MedicalHistory.query.filter_by(ranch_id=ranch_id)

    start_date = parse_date(request.args.get('start_date'), 'start_date')
    end_date = parse_date(request.args.get('end_date'), 'end_date')
    if start_date:
        query = query.filter(MedicalHistory.date >= start_date)
    if end_date:
        query = query.filter(MedicalHistory.date <= end_date)

    entries = query.order_by(MedicalHistory.date.desc(), MedicalHistory.id.desc()).all()
    return jsonify([entry.to_dict() for entry in entries])


@api.route('/ranch/<int:ranch_id>/animal/<int:animal_id>/medical/add', methods=['POST'])
def add_medical_history(ranch_id, animal_id):
    """Adds a medical history entry. Expects 'description' and an optional 'date' (defaults to today)."""
    get_writable_ranch(ranch_id)
    animal = ranch_animal_or_404(ranch_id, animal_id)
    data = get_json_body()

    description = (data.get('description') or '').strip()
    if not description:
        return jsonify({'error': "The 'description' field is required."}), 400
    entry_date = parse_date(data.get('date'), 'date') or date.today()
    user = current_user()

    try:
        entry = MedicalHistory(
            animal_id=animal.id,
            ranch_id=ranch_id,
            date=entry_date,
            description=description,
            created_by_user_id=user.id if user else None,
        )
        db.session.add(entry)
        db.session.commit()
        return jsonify({'message': 'Medical history added.', 'medical_history': entry.to_dict()}), 201
    except Exception as e:
        db.session.rollback()
        return jsonify({'error': f'An unexpected error occurred: {str(e)}'}), 500


@api.route('/ranch/<int:ranch_id>/medical/<int:medical_id>/delete', methods=['DELETE'])
def delete_medical_history(ranch_id, medical_id):
    get_writable_ranch(ranch_id)
    entry = MedicalHistory.query.filter_by(id=medical_id, ranch_id=ranch_id).first_or_404()
    db.session.delete(entry)
    db.session.commit()
    return jsonify({'message': 'Medical history entry deleted.'})


@api.route('/ranch/<int:ranch_id>/animal/<int:animal_id>/injection/add', methods=['POST'])
def add_injection(ranch_id, animal_id):
    """
    Records a drug injection as a medical history entry, with the dose worked out
    from the drug and the animal's weight. Expects 'drug_id', optional 'weight_lbs'
    (defaults to the animal's weight), 'date' and 'notes'.
    """
    ranch = get_writable_ranch(ranch_id)
    if ranch.settings is None or not ranch.settings.enable_injection_feature:
        return jsonify({'error': 'The injection feature is not enabled for this ranch.'}), 403

    animal = ranch_animal_or_404(ranch_id, animal_id)
    data = get_json_body()
    drug_id = parse_int(data.get('drug_id'), 'drug_id')
    if drug_id is None:
        return jsonify({'error': "The 'drug_id' field is required."}), 400
    drug = Drug.query.filter_by(id=drug_id, ranch_id=ranch_id).first_or_404()

    weight = parse_float(data.get('weight_lbs'), 'weight_lbs') if data.get('weight_lbs') not in (None, '') \
        else animal.weight_lbs
    dose = calculate_dose(drug, weight)
    if dose is None:
        return jsonify({'error': 'Unable to calculate dose. Enter the animal weight.'}), 400

    description = f"{drug.drug_name} - {dose:.2f} ml"
    notes = (data.get('notes') or '').strip()
    if notes:
        description = f"{description}\n{notes}"
    user = current_user()

    entry = MedicalHistory(
        animal_id=animal.id,
        ranch_id=ranch_id,
        date=parse_date(data.get('date'), 'date') or date.today(),
        description=description,
        created_by_user_id=user.id if user else None,
    )
    db.session.add(entry)
    if 'weight_lbs' in data and weight is not None:
        animal.weight_lbs = weight
    db.session.commit()
    return jsonify({'message': 'Injection recorded.', 'dose_ml': round(dose, 2),
                    'medical_history': entry.to_dict()}), 201


# --- Drugs ---

@api.route('/ranch/<int:ranch_id>/drugs', methods=['GET'])
def get_drugs(ranch_id):
    Ranch.query.get_or_404(ranch_id)
    drugs = Drug.query.filter_by(ranch_id=ranch_id).order_by(Drug.drug_name).all()
    return jsonify([drug.to_dict() for drug in drugs])


@api.route('/ranch/<int:ranch_id>/drug/add', methods=['POST'])
def add_drug(ranch_id):
    """Adds a drug. Expects 'drug_name' and either 'ccs_per_pound' or 'fixed_dose_ml'."""
    get_writable_ranch(ranch_id)
    data = get_json_body()
    drug_name = (data.get('drug_name') or '').strip()
    if not drug_name:
        return jsonify({'error': "The 'drug_name' field is required."}), 400

    ccs_per_pound = parse_float(data.get('ccs_per_pound'), 'ccs_per_pound')
    fixed_dose_ml = parse_float(data.get('fixed_dose_ml'), 'fixed_dose_ml')
    if ccs_per_pound is None and fixed_dose_ml is None:
        return jsonify({'error': "Either 'ccs_per_pound' or 'fixed_dose_ml' is required."}), 400

    try:
        new_drug = Drug(
            ranch_id=ranch_id,
            drug_name=drug_name,
            animal_type=normalize_animal_type(data.get('animal_type')),
            ccs_per_pound=ccs_per_pound,
            fixed_dose_ml=fixed_dose_ml,
            notes=blank_to_none(data.get('notes')),
        )
        db.session.add(new_drug)
        db.session.commit()
        return jsonify({'message': 'Drug added successfully!', 'drug': new_drug.to_dict()}), 201
    except IntegrityError:
        db.session.rollback()
        return jsonify({'error': f"A drug named '{drug_name}' already exists on this ranch."}), 409


@api.route('/ranch/<int:ranch_id>/drug/<int:drug_id>/delete', methods=['DELETE'])
def delete_drug(ranch_id, drug_id):
    get_writable_ranch(ranch_id)
    drug = Drug.query.filter_by(id=drug_id, ranch_id=ranch_id).first_or_404()
    db.session.delete(drug)
    db.session.commit()
    return jsonify({'message': f"Drug '{drug.drug_name}' deleted."})


# --- Photos ---

@api.route('/ranch/<int:ranch_id>/animal/<int:animal_id>/photos', methods=['GET'])
def get_animal_photos(ranch_id, animal_id):
    animal = ranch_animal_or_404(ranch_id, animal_id)
    photos = sorted(animal.photos, key=lambda p: (not p.is_primary, p.created_at, p.id))
    return jsonify([photo.to_dict() for photo in photos])


@api.route('/ranch/<int:ranch_id>/animal/<int:animal_id>/photo/add', methods=['POST'])
def add_animal_photo(ranch_id, animal_id):
    """Uploads a photo (multipart field 'photo', optional form field 'caption')."""
    get_writable_ranch(ranch_id)
    animal = ranch_animal_or_404(ranch_id, animal_id)

    if 'photo' not in request.files:
        return jsonify({'error': 'No file part in the request.'}), 400
    file = request.files['photo']
    if file.filename == '':
        return jsonify({'error': 'No file selected.'}), 400
    if not is_allowed_image(file.filename):
        allowed = ', '.join(sorted(ALLOWED_IMAGE_EXTENSIONS))
        return jsonify({'error': f'Invalid file type. Allowed types: {allowed}.'}), 400

    data = file.read()
    if not data:
        return jsonify({'error': 'The uploaded file is empty.'}), 400

    storage_path = new_photo_path(ranch_id, animal.id, file_extension(file.filename))
    get_photo_storage().save(storage_path, data)

    try:
        photo = AnimalPhoto(
            animal_id=animal.id,
            ranch_id=ranch_id,
            storage_path=storage_path,
            caption=blank_to_none(request.form.get('caption')),
            is_primary=not animal.photos,
            file_size_bytes=len(data),
            content_hash=hashlib.sha256(data).hexdigest(),
        )
        db.session.add(photo)
        db.session.commit()
    except Exception as e:
        db.session.rollback()
        delete_photo_blobs([storage_path])
        return jsonify({'error': f'An unexpected error occurred: {str(e)}'}), 500

    return jsonify({'message': 'Photo uploaded.', 'photo': photo.to_dict()}), 201


@api.route('/ranch/<int:ranch_id>/photo/<int:photo_id>/file', methods=['GET'])
def get_photo_file(ranch_id, photo_id):
    photo = AnimalPhoto.query.filter_by(id=photo_id, ranch_id=ranch_id).first_or_404()
    try:
        data = get_photo_storage().read(photo.storage_path)
    except (OSError, ValueError) as e:
        current_app.logger.warning("Photo %s missing from storage: %s", photo.id, e)
        return jsonify({'error': 'The photo file could not be found.'}), 404

    mimetype = mimetypes.guess_type(photo.storage_path)[0] or 'application/octet-stream'
    return send_file(io.BytesIO(data), mimetype=mimetype,
                     download_name=f"photo_{photo.id}.{photo.extension}")


@api.route('/ranch/<int:ranch_id>/photo/<int:photo_id>/primary', methods=['POST'])
def set_primary_photo(ranch_id, photo_id):
    get_writable_ranch(ranch_id)
    photo = AnimalPhoto.query.filter_by(id=photo_id, ranch_id=ranch_id).first_or_404()
    AnimalPhoto.query.filter_by(animal_id=photo.animal_id).update({'is_primary': False})
    photo.is_primary = True
    db.session.commit()
    return jsonify({'message': 'Primary photo updated.', 'photo': photo.to_dict()})


@api.route('/ranch/<int:ranch_id>/photo/<int:photo_id>/delete', methods=['DELETE'])
def delete_animal_photo(ranch_id, photo_id):
    get_writable_ranch(ranch_id)
    photo = AnimalPhoto.query.filter_by(id=photo_id, ranch_id=ranch_id).first_or_404()
    storage_path = photo.storage_path
    db.session.delete(photo)
    db.session.commit()
    delete_photo_blobs([storage_path])
    return jsonify({'message': 'Photo deleted.'})


# --- Custom fields ---

@api.route('/ranch/<int:ranch_id>/custom_fields', methods=['GET'])
def get_custom_fields(ranch_id):
    ranch = Ranch.query.get_or_404(ranch_id)
    return jsonify([f.to_dict() for f in ranch.custom_fields])


@api.route('/ranch/<int:ranch_id>/custom_field/add', methods=['POST'])
def add_custom_field(ranch_id):
    """Defines a custom field. Expects 'field_name' and 'field_type' (text, dollar, integer or decimal)."""
    get_writable_ranch(ranch_id)
    data = get_json_body()
    field_name = (data.get('field_name') or '').strip()
    if not field_name:
        return jsonify({'error': "The 'field_name' field is required."}), 400
    field_type = (data.get('field_type') or 'text').strip().lower()
    if field_type not in CUSTOM_FIELD_TYPES:
        return jsonify({'error': f"'field_type' must be one of: {', '.join(CUSTOM_FIELD_TYPES)}."}), 400

    last = CustomFieldDefinition.query.filter_by(ranch_id=ranch_id) \
        .order_by(CustomFieldDefinition.display_order.desc()).first()

    try:
        definition = CustomFieldDefinition(
            ranch_id=ranch_id,
            field_name=field_name,
            field_type=field_type,
            include_in_totals=bool(data.get('include_in_totals', False)),
            is_required=bool(data.get('is_required', False)),
            display_order=last.display_order + 1 if last else 0,
        )
        db.session.add(definition)
        db.session.commit()
        return jsonify({'message': 'Custom field created.', 'custom_field': definition.to_dict()}), 201
    except IntegrityError:
        db.session.rollback()
        return jsonify({'error': f"A custom field named '{field_name}' already exists on this ranch."}), 409


@api.route('/ranch/<int:ranch_id>/custom_field/<int:field_id>/delete', methods=['DELETE'])
def delete_custom_field(ranch_id, field_id):
    """Deletes a custom field definition together with every value stored for it."""
    get_writable_ranch(ranch_id)
    definition = CustomFieldDefinition.query.filter_by(id=field_id, ranch_id=ranch_id).first_or_404()
    db.session.delete(definition)
    db.session.commit()
    return jsonify({'message': f"Custom field '{definition.field_name}' deleted."})


@api.route('/ranch/<int:ranch_id>/animal/<int:animal_id>/custom_fields', methods=['POST'])
def set_animal_custom_fields(ranch_id, animal_id):
    """
    Sets custom field values for an animal. Expects a JSON object mapping field
    ids to values; a blank value removes the stored value.
    """
    get_writable_ranch(ranch_id)
    animal = ranch_animal_or_404(ranch_id, animal_id)
    data = get_json_body()

    definitions = {d.id: d for d in CustomFieldDefinition.query.filter_by(ranch_id=ranch_id).all()}
    existing = {v.field_id: v for v in animal.custom_values}

    for raw_id, raw_value in data.items():
        field_id = parse_int(raw_id, 'field id')
        definition = definitions.get(field_id)
        if definition is None:
            raise ValidationError(f"Custom field {raw_id} not found on this ranch.")
        try:
            value = validate_custom_field_value(definition.field_type, raw_value)
        except ValidationError as e:
            raise ValidationError(f"{definition.field_name}: {e.message}")
        if value is None and definition.is_required:
            raise ValidationError(f"'{definition.field_name}' is required.")

        current = existing.get(field_id)
        if value is None:
            if current is not None:
                db.session.delete(current)
        elif current is not None:
            current.value = value
        else:
            db.session.add(CustomFieldValue(animal_id=animal.id, field_id=field_id, value=value))

    db.session.commit()
    return jsonify({'message': 'Custom fields saved.', 'animal': animal.to_master_record()})


# --- Licensing ---

@api.route('/ranch/<int:ranch_id>/license', methods=['GET'])
def get_ranch_license(ranch_id):
    ranch = Ranch.query.get_or_404(ranch_id)
    info = ranch_license(ranch)
    total = count_ranch_animals(ranch.id)
    result = info.to_dict()
    result['present_animals'] = count_present_animals(ranch.id)
    result['animal_count'] = total
    result['message'] = license_message(info, total)
    return jsonify(result)


@api.route('/ranch/<int:ranch_id>/license/activate', methods=['POST'])
def activate_ranch_license(ranch_id):
    """Activates a license key on a ranch. Allowed even when the ranch is read-only."""
    ranch = Ranch.query.get_or_404(ranch_id)
    data = get_json_body()
    license_key = activate_license(ranch, data.get('license_key'))
    return jsonify({
        'message': f"License activated. Valid until {license_key.expiration_date.isoformat()}.",
        'license': ranch_license(ranch).to_dict(),
    })


@api.route('/admin/license_key/add', methods=['POST'])
def add_license_key():
    """(Admin) Creates a license key. Expects 'license_type', 'expiration_date', optional 'max_animals' and 'key'."""
    admin = require_admin()
    data = get_json_body()
    max_animals = parse_int(data.get('max_animals'), 'max_animals')
    license_key = create_license_key(
        (data.get('license_type') or '').strip().lower(),
        parse_date(data.get('expiration_date'), 'expiration_date'),
        max_animals=max_animals if max_animals is not None else 50,
        key=data.get('key'),
        created_by=admin,
    )
    return jsonify({'message': 'License key created.', 'license_key': license_key.to_dict()}), 201


@api.route('/admin/license_keys', methods=['GET'])
def get_license_keys():
    """(Admin) Lists license keys; 'available=true' gives only unused, unexpired keys."""
    require_admin()
    if request.args.get('available', '').lower() in ('1', 'true', 'yes'):
        keys = available_license_keys()
    else:
        keys = LicenseKey.query.order_by(LicenseKey.created_at.desc(), LicenseKey.id.desc()).all()
    return jsonify([k.to_dict() for k in keys])


# --- Invitations ---

@api.route('/admin/invitation/ranch_creation', methods=['POST'])
def add_ranch_creation_invitation():
    """(Admin) Invites someone to create a ranch under an unused license key ('license_key_id')."""
    admin = require_admin()
    data = get_json_body()
    license_key_id = parse_int(data.get('license_key_id'), 'license_key_id')
    if license_key_id is None:
        return jsonify({'error': "The 'license_key_id' field is required."}), 400
    license_key = LicenseKey.query.get_or_404(license_key_id)

    expires_in_days = parse_int(data.get('expires_in_days'), 'expires_in_days') \
        or current_app.config['INVITATION_EXPIRY_DAYS']
    invitation = create_ranch_creation_invitation(license_key, admin, data.get('restricted_email'), expires_in_days)
    return jsonify({'message': 'Invitation created.', 'invitation': invitation.to_dict()}), 201


@api.route('/ranch/<int:ranch_id>/invitation/add', methods=['POST'])
def add_ranch_member_invitation(ranch_id):
    """Invites someone to join a ranch. Expects 'role' and optional 'restricted_email', 'expires_in_days'."""
    ranch = get_writable_ranch(ranch_id)
    user = require_user()
    membership = db.session.get(UserRanch, (user.id, ranch.id))
    if not user.is_admin and (membership is None or membership.role not in INVITING_ROLES):
        return jsonify({'error': 'You do not have permission to invite members to this ranch.'}), 403

    data = get_json_body()
    expires_in_days = parse_int(data.get('expires_in_days'), 'expires_in_days') \
        or current_app.config['INVITATION_EXPIRY_DAYS']
    invitation = create_ranch_member_invitation(ranch, data.get('role'), user,
                                                data.get('restricted_email'), expires_in_days)
    return jsonify({'message': 'Invitation created.', 'invitation': invitation.to_dict()}), 201


@api.route('/ranch/<int:ranch_id>/invitations', methods=['GET'])
def get_ranch_invitations(ranch_id):
    ranch = Ranch.query.get_or_404(ranch_id)
    return jsonify([i.to_dict() for i in ranch_invitations(ranch)])


@api.route('/invitation/<int:invitation_id>/delete', methods=['DELETE'])
def delete_invitation(invitation_id):
    """Withdraws an invitation. Admins may delete any; ranch owners and managers their ranch's."""
    invitation = Invitation.query.get_or_404(invitation_id)
    user = require_user()
    if not user.is_admin:
        membership = db.session.get(UserRanch, (user.id, invitation.ranch_id)) if invitation.ranch_id else None
        if membership is None or membership.role not in INVITING_ROLES:
            return jsonify({'error': 'You do not have permission to delete this invitation.'}), 403

    db.session.delete(invitation)
    db.session.commit()
    return jsonify({'message': f"Invitation {invitation.code} deleted."})


@api.route('/invitation/<code>', methods=['GET'])
def check_invitation(code):
    """Checks whether an invitation code can be redeemed (by the acting user, when given)."""
    invitation = validate_invitation_code(code, current_user())
    result = invitation.to_dict()
    if invitation.type == 'ranch_member':
        result['ranch_name'] = invitation.ranch.name
    else:
        result['license_type'] = invitation.license_key.license_type
        result['license_expiration'] = invitation.license_key.expiration_date.isoformat()
    return jsonify(result)


@api.route('/invitation/<code>/redeem', methods=['POST'])
def redeem_invitation_code(code):
    """
    Redeems an invitation for the acting user. Ranch-creation invitations
    need 'ranch_name' (and optionally 'ranch_location') in the body.
    """
    user = require_user()
    data = request.get_json(silent=True) or {}
    invitation = validate_invitation_code(code, user)
    ranch = redeem_invitation(invitation, user, data.get('ranch_name'), data.get('ranch_location'))
    return jsonify({'message': 'Invitation redeemed.', 'ranch': ranch.to_dict()}), 201


# --- Import, backup and restore ---

@api.route('/ranch/<int:ranch_id>/import/v1', methods=['POST'])
def import_v1(ranch_id):
    """Imports V1 CSV exports: 'animals_file' and an optional 'medical_file'."""
    ranch = get_writable_ranch(ranch_id)
    if 'animals_file' not in request.files:
        return jsonify({'error': 'No file part in the request.'}), 400
    animals_file = request.files['animals_file']
    if animals_file.filename == '':
        return jsonify({'error': 'No file selected.'}), 400

    medical_file = request.files.get('medical_file')
    medical_csv = medical_file.read() if medical_file and medical_file.filename else None

    try:
        result = import_v1_files(
            ranch,
            animals_file.read(),
            medical_csv,
            user=current_user(),
            grace_period_days=current_app.config['LICENSE_GRACE_PERIOD_DAYS'],
        )
    except IntegrityError as e:
        db.session.rollback()
        return jsonify({'error': f'Database integrity error. Import cancelled. Error: {str(e)}'}), 409
    except UnicodeDecodeError:
        db.session.rollback()
        return jsonify({'error': 'The CSV files must be UTF-8 text.'}), 400

    status = 201 if result.imported else 200
    return jsonify({'message': f'Imported {result.imported} animals.', 'result': result.to_dict()}), status


@api.route('/ranch/<int:ranch_id>/backup', methods=['GET'])
def download_backup(ranch_id):
    """Downloads a zip with every animal, its history, custom fields and photos. Allowed on read-only ranches."""
    ranch = Ranch.query.get_or_404(ranch_id)
    try:
        data = create_backup(ranch, get_photo_storage())
    except Exception as e:
        db.session.rollback()
        return jsonify({'error': f'An unexpected error occurred during backup: {str(e)}'}), 500

    return send_file(
        io.BytesIO(data),
        as_attachment=True,
        download_name=backup_filename(ranch),
        mimetype='application/zip'
    )


@api.route('/ranch/<int:ranch_id>/restore', methods=['POST'])
def restore_ranch_backup(ranch_id):
    """Restores a backup zip ('backup_file') into the ranch. Existing animals are not duplicated."""
    ranch = get_writable_ranch(ranch_id)
    if 'backup_file' not in request.files:
        return jsonify({'error': 'No file part in the request.'}), 400
    file = request.files['backup_file']
    if file.filename == '':
        return jsonify({'error': 'No file selected.'}), 400
    if not file.filename.lower().endswith('.zip'):
        return jsonify({'error': 'Invalid file type. Please upload a .zip backup.'}), 400

    summary = restore_backup(file.read(), ranch, get_photo_storage(), user=current_user())
    return jsonify({'message': 'Restore complete.', 'summary': summary.to_dict()})


# --- Reports ---

@api.route('/ranch/<int:ranch_id>/reports/counts', methods=['GET'])
def get_counts_report(ranch_id):
    ranch = Ranch.query.get_or_404(ranch_id)
    animals = Animal.query.filter_by(ranch_id=ranch_id).all()
    report = counts_report(animals, ranch.settings, date.today())
    report['ranch_name'] = ranch.name
    return jsonify(report)


@api.route('/ranch/<int:ranch_id>/reports/offspring', methods=['GET'])
def get_offspring_report(ranch_id):
    Ranch.query.get_or_404(ranch_id)
    animals = Animal.query.filter_by(ranch_id=ranch_id).all()
    return jsonify(offspring_by_mother_report(animals, date.today()))


@api.route('/admin/system_report', methods=['GET'])
def get_system_report():
    require_admin()
    return jsonify(system_summary())


# --- Developer Routes ---

@api.route('/dev/setup-demo-ranch', methods=['POST'])
def setup_demo():
    """
    (For Developers) Creates the demo ranch with a demo license and a small herd.
    This is a destructive operation if the demo ranch already exists.
    """
    params = request.get_json(silent=True) or {}
    owner = current_user()
    try:
        ranch = setup_demo_ranch(owner=owner, seed=params.get('seed'))
    except Exception as e:
        db.session.rollback()
        current_app.logger.exception("Demo ranch setup failed")
        return jsonify({'error': f'An unexpected error occurred: {str(e)}'}), 500

    return jsonify({
        'message': 'Demo ranch created.',
        'ranch': ranch.to_dict(),
        'animal_count': count_present_animals(ranch.id),
    }), 201

from datetime import date

from .errors import ValidationError

ANIMAL_TYPES = ['Cattle', 'Horse', 'Sheep', 'Goat', 'Pig', 'Donkey', 'Other']

# Sexes are stored upper-case. 'Other' animals accept any sex.
SEX_OPTIONS = {
    'Cattle': ['BULL', 'STEER', 'COW', 'HEIFER'],
    'Horse': ['STALLION', 'GELDING', 'MARE', 'FILLY', 'COLT'],
    'Sheep': ['RAM', 'WETHER', 'EWE', 'LAMB'],
    'Goat': ['BUCK', 'WETHER', 'DOE', 'KID'],
    'Pig': ['BOAR', 'BARROW', 'SOW', 'GILT', 'PIGLET'],
    'Donkey': ['STALLION', 'GELDING', 'MARE', 'FILLY', 'COLT'],
    'Other': [],
}

FEMALE_SEXES = {'COW', 'HEIFER', 'EWE', 'DOE', 'SOW', 'GILT', 'MARE', 'FILLY', 'JENNET'}

# (from_sex, to_sex, name of the RanchSettings column holding the age threshold)
AUTO_PROMOTION_RULES = {
    'Cattle': [('HEIFER', 'COW', 'cattle_adult_age')],
    'Horse': [('FILLY', 'MARE', 'horse_adult_age'), ('COLT', 'STALLION', 'horse_adult_age')],
    'Donkey': [('FILLY', 'MARE', 'horse_adult_age'), ('COLT', 'STALLION', 'horse_adult_age')],
    'Sheep': [],
    'Goat': [],
    'Pig': [],
    'Other': [],
}


def sex_options(animal_type):
    return SEX_OPTIONS.get(animal_type, [])


def normalize_animal_type(value, default='Cattle'):
    """Matches an animal type case-insensitively; blank gives the default."""
    if value is None or not str(value).strip():
        return default
    wanted = str(value).strip().lower()
    for animal_type in ANIMAL_TYPES:
        if animal_type.lower() == wanted:
            return animal_type
    # Older data used 'BOVINE' for cattle.
    if wanted == 'bovine':
        return 'Cattle'
    raise ValidationError(f"Unknown animal type '{value}'. Expected one of: {', '.join(ANIMAL_TYPES)}.")


def validate_animal_type_and_sex(animal_type, sex):
    """
    Checks an (animal_type, sex) pair and returns the normalised pair.
    A blank sex is allowed and comes back as None.
    """
    animal_type = normalize_animal_type(animal_type)
    if sex is None or not str(sex).strip():
        return animal_type, None
    sex = str(sex).strip().upper()
    allowed = sex_options(animal_type)
    if allowed and sex not in allowed:
        raise ValidationError(f"Sex '{sex}' is not valid for {animal_type}. Expected one of: {', '.join(allowed)}.")
    return animal_type, sex


def age_in_years(birth_date, today=None):
    if birth_date is None:
        return None
    today = today or date.today()
    return (today - birth_date).days / 365.25


def should_promote_sex(animal_type, current_sex, age_years, settings):
    """Returns the sex an animal should be promoted to, or None."""
    if age_years is None:
        return None
    for from_sex, to_sex, threshold_key in AUTO_PROMOTION_RULES.get(animal_type, []):
        if current_sex == from_sex:
            threshold = getattr(settings, threshold_key, None)
            if threshold is not None and age_years >= threshold:
                return to_sex
    return None


def promote_animals(animals, settings, today=None):
    """
    Applies the auto-promotion rules to present animals that have a birth date.
    Changes are made on the objects; the caller commits. Returns the promoted animals.
    """
    promoted = []
    for animal in animals:
        if not animal.is_present or animal.birth_date is None:
            continue
        new_sex = should_promote_sex(animal.animal_type, animal.sex, age_in_years(animal.birth_date, today), settings)
        if new_sex:
            animal.sex = new_sex
            promoted.append(animal)
    return promoted

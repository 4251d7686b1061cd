from datetime import date

from . import db
from .models import Ranch, User, Animal, AnimalPhoto, LicenseKey, Invitation, MedicalHistory
from .animal_types import FEMALE_SEXES, age_in_years


def counts_report(animals, settings, today=None):
    """
    Herd counts for the counts report. Animals without a birth date count as adults.
    """
    today = today or date.today()
    adult_age = float(settings.adult_age_years) if settings and settings.adult_age_years else 1.1
    present = [a for a in animals if a.status == 'PRESENT']

    def is_adult(animal):
        age = age_in_years(animal.birth_date, today)
        return age is None or age >= adult_age

    by_sex = {}
    for animal in present:
        key = animal.sex or 'UNKNOWN'
        by_sex[key] = by_sex.get(key, 0) + 1

    adults = [a for a in present if is_adult(a)]
    return {
        'total_present': len(present),
        'total_sold': sum(1 for a in animals if a.status == 'SOLD'),
        'total_dead': sum(1 for a in animals if a.status == 'DEAD'),
        'total_butchered': sum(1 for a in animals if a.status == 'BUTCHERED'),
        'present_by_sex': by_sex,
        'present_adults': len(adults),
        'present_calves': len(present) - len(adults),
    }


def offspring_by_mother_report(animals, today=None):
    """For every present female: her offspring and how long since the last one was born."""
    today = today or date.today()
    children_by_mother = {}
    for animal in animals:
        if animal.mother_id is not None:
            children_by_mother.setdefault(animal.mother_id, []).append(animal)

    report = []
    for mother in animals:
        if mother.status != 'PRESENT' or mother.sex not in FEMALE_SEXES:
            continue
        offspring = children_by_mother.get(mother.id, [])
        birth_dates = sorted((o.birth_date for o in offspring if o.birth_date), reverse=True)
        most_recent = birth_dates[0] if birth_dates else None
        report.append({
            'parent_id': mother.id,
            'parent_tag': mother.tag_number,
            'parent_name': mother.name,
            'offspring': [{'id': o.id, 'tag_number': o.tag_number, 'birth_date': o.birth_date.isoformat() if o.birth_date else None}
                          for o in offspring],
            'most_recent_birth_date': most_recent.isoformat() if most_recent else None,
            'days_since_last_offspring': (today - most_recent).days if most_recent else None,
        })

    # Longest without a calf first; mothers that never had one go last.
    report.sort(key=lambda r: (r['days_since_last_offspring'] is None, -(r['days_since_last_offspring'] or 0)))
    return report


def system_summary():
    """Row counts across the whole installation, for administrators."""
    return {
        'ranches': db.session.query(Ranch.id).count(),
        'users': db.session.query(User.id).count(),
        'animals': db.session.query(Animal.id).count(),
        'present_animals': db.session.query(Animal.id).filter(Animal.status == 'PRESENT').count(),
        'medical_history_entries': db.session.query(MedicalHistory.id).count(),
        'photos': db.session.query(AnimalPhoto.id).count(),
        'license_keys': db.session.query(LicenseKey.id).count(),
        'unused_license_keys': db.session.query(LicenseKey.id).filter(LicenseKey.used_by_ranch_id.is_(None)).count(),
        'open_invitations': db.session.query(Invitation.id).filter(Invitation.used_at.is_(None)).count(),
    }

from models import db
from models.user import Role

DEFAULT_ROLE = "CUSTOMER"

DEFAULT_ROLES = {
    "ADMIN": "Full back-office access",
    "STAFF": "Catalog and order management",
    "CUSTOMER": "Storefront customer",
}


def seed_roles():
    existing = {r.name for r in Role.query.all()}
    for name, description in DEFAULT_ROLES.items():
        if name not in existing:
            db.session.add(Role(name=name, description=description))
    db.session.commit()


def default_role():
    return Role.query.filter_by(name=DEFAULT_ROLE).first()

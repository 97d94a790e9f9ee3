"""
Directory models: offices, users, roles.

The routing engine only needs a thin identity surface from the directory:
which office a user sits in and whether they hold the ``Administrator`` or
``Endorser`` role. Authentication lives outside this package.
"""

from datetime import datetime, timezone

from opts.models import db

ROLE_ADMINISTRATOR = "Administrator"
ROLE_ENDORSER = "Endorser"
ROUTING_ROLES = (ROLE_ENDORSER, ROLE_ADMINISTRATOR)


# ═══════════════════════════════════════════════════════════════
# 1. OFFICES
# ═══════════════════════════════════════════════════════════════
class Office(db.Model):
    __tablename__ = "offices"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    abbreviation = db.Column(db.String(30), unique=True, nullable=False)
    is_active = db.Column(db.Boolean, default=True, nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    users = db.relationship("User", back_populates="office", lazy="dynamic")

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "abbreviation": self.abbreviation,
            "is_active": self.is_active,
        }

    def __repr__(self):
        return f"<Office {self.id}: {self.abbreviation}>"


# ═══════════════════════════════════════════════════════════════
# 2. USERS
# ═══════════════════════════════════════════════════════════════
class User(db.Model):
    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    email = db.Column(db.String(200), unique=True, nullable=False)
    office_id = db.Column(
        db.Integer, db.ForeignKey("offices.id", ondelete="SET NULL"), nullable=True, index=True,
    )
    is_active = db.Column(db.Boolean, default=True, nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    office = db.relationship("Office", back_populates="users")
    user_roles = db.relationship(
        "UserRole", back_populates="user", lazy="dynamic", cascade="all",
    )

    @property
    def role_names(self):
        """List of role names for this user."""
        return [ur.role.name for ur in self.user_roles.all()]

    def has_role(self, name: str) -> bool:
        return name in self.role_names

    def has_any_role(self, names) -> bool:
        held = set(self.role_names)
        return any(name in held for name in names)

    def is_administrator(self) -> bool:
        return self.has_role(ROLE_ADMINISTRATOR)

    def to_dict(self, include_roles=False):
        d = {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "office_id": self.office_id,
            "is_active": self.is_active,
        }
        if include_roles:
            d["roles"] = self.role_names
        return d

    def __repr__(self):
        return f"<User {self.id}: {self.email}>"


# ═══════════════════════════════════════════════════════════════
# 3. ROLES
# ═══════════════════════════════════════════════════════════════
class Role(db.Model):
    __tablename__ = "roles"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), unique=True, nullable=False)
    description = db.Column(db.Text)

    user_roles = db.relationship("UserRole", back_populates="role", lazy="dynamic")

    def __repr__(self):
        return f"<Role {self.name}>"


# ═══════════════════════════════════════════════════════════════
# 4. USER ↔ ROLE
# ═══════════════════════════════════════════════════════════════
class UserRole(db.Model):
    __tablename__ = "user_roles"
    __table_args__ = (
        db.UniqueConstraint("user_id", "role_id", name="uq_user_role"),
    )

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    role_id = db.Column(db.Integer, db.ForeignKey("roles.id", ondelete="CASCADE"), nullable=False)
    assigned_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    user = db.relationship("User", back_populates="user_roles")
    role = db.relationship("Role", back_populates="user_roles")

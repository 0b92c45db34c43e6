# --- dtfshop/model/user.py ---

from ..extensions import db


class User(db.Model):
    __tablename__ = "user"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(180), nullable=True)
    email = db.Column(db.String(255), unique=True, nullable=False, index=True)
    role = db.Column(db.String(50), nullable=False, default="user", index=True)  # user, admin
    is_professional = db.Column(db.Boolean, nullable=False, default=False)

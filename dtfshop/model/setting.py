# dtfshop/model/setting.py
from sqlalchemy.sql import func
from ..extensions import db


class Setting(db.Model):
    __tablename__ = "setting"

    id = db.Column(db.Integer, primary_key=True)
    key = db.Column(db.String(64), unique=True, nullable=False, index=True)
    value = db.Column(db.String(255), nullable=False, default="")
    updated_at = db.Column(db.DateTime, onupdate=func.now(), server_default=func.now())

from flask import Blueprint

bp = Blueprint("quote", __name__, url_prefix="/api/quotes")

from . import routes  # noqa: E402,F401

# dtfshop/notification/routes.py
from ..extensions import db
from ..model import Notification
from ..utils.api import err, ok
from ..utils.decorators import _current_user, login_required
from . import bp


@bp.get("")
@login_required
def get_notifications():
    user = _current_user()
    notes = (Notification.query.filter_by(user_id=user.id)
             .order_by(Notification.created_at.desc())
             .limit(100).all())
    return ok("notifications", {"items": [n.as_dict() for n in notes]})


@bp.put("/<int:note_id>/read")
@login_required
def mark_as_read(note_id):
    user = _current_user()
    note = db.session.get(Notification, note_id)
    if note is None or note.user_id != user.id:
        return err("notification not found", 404)
    note.is_read = True
    db.session.commit()
    return ok("marked as read", {"notification": note.as_dict()})

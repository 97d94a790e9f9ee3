"""
Procurement Routing Engine
Notification Service.

Creates in-app notifications for routing events. Called by the
endorsement engine after its unit of work has committed, and by the
overdue sweep.

Recipients per event:
    out-of-workflow endorsement → Administrators + users of the expected office
    receipt                     → users of the receiving office
    completion                  → the transaction creator
    overdue                     → current holder + Administrators
"""

from opts.models import db
from opts.models.directory import ROLE_ADMINISTRATOR, Office, Role, User, UserRole
from opts.models.notification import Notification
from opts.models.workflow import CATEGORY_LABELS


def _tx_label(tx):
    label = CATEGORY_LABELS.get(tx.category, tx.category)
    ref = tx.reference_number or f"#{tx.id}"
    return f"{label} {ref}"


def _office_label(office_id):
    office = db.session.get(Office, office_id) if office_id else None
    return office.abbreviation if office else "Unknown"


class NotificationService:
    """Stateless service class for notification operations."""

    # ── Create ────────────────────────────────────────────────────────────

    @staticmethod
    def broadcast(*, recipient_ids, title, message="", category="system",
                  severity="info", entity_type="", entity_id=None):
        """
        Send one notification per distinct recipient.

        Returns:
            List of created Notification instances (already committed).
        """
        notifications = []
        for user_id in dict.fromkeys(recipient_ids):
            notif = Notification(
                recipient_user_id=user_id,
                title=title,
                message=message,
                category=category,
                severity=severity,
                entity_type=entity_type,
                entity_id=entity_id,
            )
            db.session.add(notif)
            notifications.append(notif)
        db.session.commit()
        return notifications

    # ── Query ─────────────────────────────────────────────────────────────

    @staticmethod
    def unread_count(user_id):
        """Return count of unread notifications for a user."""
        return Notification.query.filter_by(recipient_user_id=user_id, is_read=False).count()

    @staticmethod
    def mark_read(notification_id):
        """Mark a single notification as read."""
        notif = db.session.get(Notification, notification_id)
        if notif:
            notif.mark_read()
            db.session.commit()
        return notif

    # ── Recipient helpers ─────────────────────────────────────────────────

    @staticmethod
    def administrator_ids():
        rows = (
            db.session.query(User.id)
            .join(UserRole, UserRole.user_id == User.id)
            .join(Role, Role.id == UserRole.role_id)
            .filter(Role.name == ROLE_ADMINISTRATOR, User.is_active.is_(True))
            .order_by(User.id)
            .all()
        )
        return [r.id for r in rows]

    @staticmethod
    def office_user_ids(office_id, exclude_ids=()):
        if office_id is None:
            return []
        q = User.query.filter(User.office_id == office_id, User.is_active.is_(True))
        if exclude_ids:
            q = q.filter(User.id.notin_(list(exclude_ids)))
        return [u.id for u in q.order_by(User.id).all()]

    # ── Routing events ────────────────────────────────────────────────────

    @staticmethod
    def notify_out_of_workflow(tx, action, expected_office_id):
        """Flag an endorsement that left the workflow route."""
        admins = NotificationService.administrator_ids()
        recipients = admins + NotificationService.office_user_ids(
            expected_office_id, exclude_ids=admins,
        )
        if not recipients:
            return []
        return NotificationService.broadcast(
            recipient_ids=recipients,
            title=f"Out-of-workflow endorsement: {_tx_label(tx)}",
            message=(
                f"Endorsed from {_office_label(action.from_office_id)} to "
                f"{_office_label(action.to_office_id)}; expected "
                f"{_office_label(expected_office_id)}."
            ),
            category="routing",
            severity="warning",
            entity_type="transaction",
            entity_id=tx.id,
        )

    @staticmethod
    def notify_received(tx, action):
        recipients = NotificationService.office_user_ids(action.to_office_id)
        if not recipients:
            return []
        return NotificationService.broadcast(
            recipient_ids=recipients,
            title=f"{_tx_label(tx)} received",
            message=f"Received at {_office_label(action.to_office_id)}.",
            category="receipt",
            severity="info",
            entity_type="transaction",
            entity_id=tx.id,
        )

    @staticmethod
    def notify_completed(tx):
        if tx.created_by_user_id is None:
            return []
        return NotificationService.broadcast(
            recipient_ids=[tx.created_by_user_id],
            title=f"{_tx_label(tx)} completed",
            message="The transaction reached the end of its workflow.",
            category="completion",
            severity="success",
            entity_type="transaction",
            entity_id=tx.id,
        )

    @staticmethod
    def notify_overdue(tx, delay_days):
        recipients = []
        if tx.current_user_id is not None:
            recipients.append(tx.current_user_id)
        recipients += NotificationService.administrator_ids()
        if not recipients:
            return []
        return NotificationService.broadcast(
            recipient_ids=recipients,
            title=f"{_tx_label(tx)} is overdue",
            message=(
                f"{delay_days} business day(s) past the step deadline at "
                f"{_office_label(tx.current_office_id)}."
            ),
            category="overdue",
            severity="warning",
            entity_type="transaction",
            entity_id=tx.id,
        )

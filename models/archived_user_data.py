from datetime import datetime
from extensions import db


class ArchivedUserData(db.Model):
    """
    Encrypted snapshot of a user's profile and subscription taken right before
    the profile is anonymized. Rows are only ever inserted.
    """
    __tablename__ = 'archived_user_data'

    id = db.Column(db.Integer, primary_key=True)
    # Plain integer, not a foreign key: the snapshot outlives whatever happens to the user row.
    original_user_id = db.Column(db.Integer, nullable=False, index=True)
    # Fernet token (see utils.security.encrypt_json).
    encrypted_snapshot = db.Column(db.Text, nullable=False)
    details = db.Column('metadata', db.JSON, nullable=True) # plan name, archive reason.
    anonymized_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    restoration_expires_at = db.Column(db.DateTime, nullable=True)
    can_restore = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    def __repr__(self):
        return f'<ArchivedUserData user={self.original_user_id}>'

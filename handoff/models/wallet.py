from datetime import datetime

from handoff.extensions import db


class Wallet(db.Model):
    __tablename__ = "wallets"
    __table_args__ = (
        db.UniqueConstraint("owner_key", "currency", name="uq_wallet_owner_currency"),
    )

    id = db.Column(db.Integer, primary_key=True)
    owner_key = db.Column(db.String(64), nullable=False)  # user:<id> | platform
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True, index=True)
    kind = db.Column(db.String(16), nullable=False, default="user")  # user | platform
    currency = db.Column(db.String(3), nullable=False)
    balance_minor = db.Column(db.BigInteger, nullable=False, default=0)
    is_frozen = db.Column(db.Boolean, nullable=False, default=False)
    version = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __mapper_args__ = {"version_id_col": version}

    def to_dict(self) -> dict:
        return {
            "id": int(self.id),
            "user_id": int(self.user_id) if self.user_id is not None else None,
            "kind": self.kind,
            "currency": self.currency,
            "balance": int(self.balance_minor or 0),
            "is_frozen": bool(self.is_frozen),
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


class WalletTransaction(db.Model):
    __tablename__ = "wallet_transactions"

    id = db.Column(db.Integer, primary_key=True)
    source_wallet_id = db.Column(db.Integer, db.ForeignKey("wallets.id"), nullable=True, index=True)
    destination_wallet_id = db.Column(db.Integer, db.ForeignKey("wallets.id"), nullable=True, index=True)

    amount_minor = db.Column(db.BigInteger, nullable=False)
    currency = db.Column(db.String(3), nullable=False)
    purpose = db.Column(db.String(16), nullable=False)  # payment | refund | commission | tip | withdrawal | topup | transfer
    status = db.Column(db.String(16), nullable=False, default="pending", index=True)  # pending | completed | failed | cancelled

    escrow_enabled = db.Column(db.Boolean, nullable=False, default=False)
    escrow_release_condition = db.Column(db.String(24), nullable=True)  # delivery_confirmed | auto_release | manual
    escrow_release_date = db.Column(db.DateTime, nullable=True)
    escrow_settled_at = db.Column(db.DateTime, nullable=True)

    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=True, index=True)
    external_ref = db.Column(db.String(128), nullable=True, unique=True)
    external_txn_id = db.Column(db.String(128), nullable=True)
    idempotency_key = db.Column(db.String(160), nullable=True, unique=True)
    note = db.Column(db.String(240), nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, index=True)
    completed_at = db.Column(db.DateTime, nullable=True)

    def direction_for(self, wallet_id: int) -> str:
        if self.destination_wallet_id is not None and int(self.destination_wallet_id) == int(wallet_id):
            return "credit"
        return "debit"

    def to_dict(self) -> dict:
        return {
            "id": int(self.id),
            "source_wallet_id": self.source_wallet_id,
            "destination_wallet_id": self.destination_wallet_id,
            "amount": int(self.amount_minor or 0),
            "currency": self.currency,
            "purpose": self.purpose,
            "status": self.status,
            "escrow": {
                "enabled": bool(self.escrow_enabled),
                "release_condition": self.escrow_release_condition,
                "release_date": self.escrow_release_date.isoformat() if self.escrow_release_date else None,
                "settled_at": self.escrow_settled_at.isoformat() if self.escrow_settled_at else None,
            },
            "order_id": self.order_id,
            "external_ref": self.external_ref,
            "note": self.note or "",
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }

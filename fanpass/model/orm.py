from sqlalchemy.orm import declarative_base
from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    Float,
    ForeignKey,
    Index,
    Integer,
    BigInteger,
    Numeric,
    String,
    UniqueConstraint,
    text,
)


Base = declarative_base()

# Ticket statuses
T_UNUSED = "unused"
T_ADMITTED = "admitted"
T_REFUNDED = "refunded"
T_INVALID = "invalid"

# Payment statuses
P_PENDING = "pending"
P_SUCCESS = "success"
P_FAILED = "failed"

# Payment -> Ticket issuance states
I_NONE = "none"
I_ISSUING = "issuing"
I_ISSUED = "issued"
I_FAILED = "failed"

# Withdrawal statuses
W_PENDING = "pending"
W_PROCESSING = "processing"
W_PAID = "paid"
W_REJECTED = "rejected"

# Scan results
S_ADMITTED = "admitted"
S_DUPLICATE = "duplicate"
S_INVALID = "invalid"
S_EXPIRED = "expired"


# ----------------------------
# ORM models
# ----------------------------
class User(Base):
    __tablename__ = "users"
    id = Column(String, primary_key=True)
    email = Column(String, nullable=False, unique=True)
    display_name = Column(String, nullable=False, default="")
    # grassroot | pioneer | elder | blood_brotherhood
    tier = Column(String, nullable=False, default="grassroot")
    created_at = Column(Float, nullable=False)


class UserRole(Base):
    __tablename__ = "user_roles"
    user_id = Column(String, ForeignKey("users.id"), primary_key=True)
    role = Column(String, primary_key=True)  # admin | scanner


class BankAccount(Base):
    __tablename__ = "bank_accounts"
    id = Column(String, primary_key=True)
    user_id = Column(String, ForeignKey("users.id"), nullable=False,
                     index=True)
    bank_code = Column(String, nullable=False)
    bank_name = Column(String, nullable=False, default="")
    account_number = Column(String, nullable=False)
    account_name = Column(String, nullable=False, default="")
    is_verified = Column(Boolean, nullable=False, default=False)
    created_at = Column(Float, nullable=False)

    __table_args__ = (
        UniqueConstraint("user_id", "bank_code", "account_number",
                         name="uq_bank_accounts_user_account"),
    )


class Event(Base):
    __tablename__ = "events"
    id = Column(String, primary_key=True)
    title = Column(String, nullable=False)
    venue = Column(String, nullable=False, default="")
    starts_at = Column(Float, nullable=False)
    max_capacity = Column(Integer, nullable=False)
    tickets_sold = Column(Integer, nullable=False, default=0)
    price = Column(BigInteger, nullable=False)  # kobo
    price_coins = Column(BigInteger, nullable=True)  # NULL: not for coins
    # active | cancelled | completed
    status = Column(String, nullable=False, default="active")
    checked_in = Column(Integer, nullable=False, default=0)
    seated = Column(Boolean, nullable=False, default=False)
    vip_seats_assigned = Column(Integer, nullable=False, default=0)
    general_seats_assigned = Column(Integer, nullable=False, default=0)
    created_at = Column(Float, nullable=False)

    __table_args__ = (
        CheckConstraint("max_capacity >= 0", name="ck_events_capacity"),
        CheckConstraint(
            "tickets_sold >= 0 AND tickets_sold <= max_capacity",
            name="ck_events_sold_within_capacity",
        ),
    )


class Payment(Base):
    __tablename__ = "payments"
    id = Column(String, primary_key=True)
    user_id = Column(String, ForeignKey("users.id"), nullable=False,
                     index=True)
    purpose = Column(String, nullable=False)  # ticket | coins | membership
    event_id = Column(String, ForeignKey("events.id"), nullable=True)
    amount = Column(BigInteger, nullable=False)  # kobo
    currency = Column(String, nullable=False, default="NGN")
    external_ref = Column(String, nullable=False, unique=True)

    # pending | success | failed
    status = Column(String, nullable=False, default=P_PENDING)
    failure_reason = Column(String, nullable=True)
    channel = Column(String, nullable=True)
    meta = Column(JSON, nullable=False, default=dict)

    # none | issuing | issued | failed   (ticket purpose only)
    issuance_status = Column(String, nullable=False, default=I_NONE)
    issuance_error = Column(String, nullable=True)

    created_at = Column(Float, nullable=False)
    processed_at = Column(Float, nullable=True)


class Ticket(Base):
    __tablename__ = "tickets"
    id = Column(String, primary_key=True)
    ticket_number = Column(String, nullable=False, unique=True)
    event_id = Column(String, ForeignKey("events.id"), nullable=False,
                      index=True)
    user_id = Column(String, ForeignKey("users.id"), nullable=False,
                     index=True)
    # at most one ticket per payment
    payment_id = Column(String, ForeignKey("payments.id"), nullable=False,
                        unique=True)
    qr_token_hash = Column(String, nullable=False)

    # unused | admitted | refunded | invalid
    status = Column(String, nullable=False, default=T_UNUSED)
    admitted_at = Column(Float, nullable=True)
    admitted_by = Column(String, nullable=True)
    seating_priority = Column(Integer, nullable=False, default=0)
    seating_assignment = Column(String, nullable=True)
    created_at = Column(Float, nullable=False)


class ScanLog(Base):
    """Append-only. Rows are never updated or deleted."""
    __tablename__ = "scan_logs"
    id = Column(Integer, primary_key=True, autoincrement=True)
    ticket_id = Column(String, ForeignKey("tickets.id"), nullable=True,
                       index=True)
    presented_ticket_id = Column(String, nullable=False)
    event_id = Column(String, nullable=True, index=True)
    scanner_id = Column(String, nullable=False)
    # admitted | duplicate | invalid | expired
    result = Column(String, nullable=False)
    reason = Column(String, nullable=True)
    scanned_at = Column(Float, nullable=False)


class Wallet(Base):
    __tablename__ = "wallets"
    user_id = Column(String, ForeignKey("users.id"), primary_key=True)
    balance_coins = Column(BigInteger, nullable=False, default=0)
    total_earned = Column(BigInteger, nullable=False, default=0)
    total_spent = Column(BigInteger, nullable=False, default=0)
    updated_at = Column(Float, nullable=False)

    __table_args__ = (
        CheckConstraint("balance_coins >= 0", name="ck_wallets_nonnegative"),
    )


class WalletTransaction(Base):
    """Append-only ledger entry. The wallet balance replays from these."""
    __tablename__ = "wallet_transactions"
    id = Column(String, primary_key=True)
    user_id = Column(String, ForeignKey("users.id"), nullable=False,
                     index=True)
    amount = Column(BigInteger, nullable=False)  # signed coins
    # purchase | bonus | withdrawal | admin_adjustment | vote | spend | refund
    type = Column(String, nullable=False)
    ref_id = Column(String, nullable=True)
    description = Column(String, nullable=False, default="")
    created_at = Column(Float, nullable=False)

    __table_args__ = (
        # NULL refs never collide, so unreferenced entries stay unrestricted
        UniqueConstraint("user_id", "type", "ref_id",
                         name="uq_wallet_tx_ref"),
        CheckConstraint("amount <> 0", name="ck_wallet_tx_nonzero"),
    )


class WithdrawalRequest(Base):
    __tablename__ = "withdrawal_requests"
    id = Column(String, primary_key=True)
    user_id = Column(String, ForeignKey("users.id"), nullable=False,
                     index=True)
    bank_account_id = Column(String, ForeignKey("bank_accounts.id"),
                             nullable=False)
    amount_coins = Column(BigInteger, nullable=False)
    amount_naira = Column(Numeric(14, 2), nullable=False)
    # pending | processing | paid | rejected
    status = Column(String, nullable=False, default=W_PENDING)
    reference_code = Column(String, nullable=False, unique=True)
    admin_note = Column(String, nullable=True)
    processed_by = Column(String, nullable=True)
    created_at = Column(Float, nullable=False)
    processed_at = Column(Float, nullable=True)

    __table_args__ = (
        # at most one open withdrawal per user
        Index(
            "uq_withdrawals_one_open_per_user", "user_id",
            unique=True,
            postgresql_where=text("status IN ('pending','processing')"),
            sqlite_where=text("status IN ('pending','processing')"),
        ),
        CheckConstraint("amount_coins > 0", name="ck_withdrawals_positive"),
    )


class Membership(Base):
    __tablename__ = "memberships"
    user_id = Column(String, ForeignKey("users.id"), primary_key=True)
    tier = Column(String, nullable=False)
    billing_interval = Column(String, nullable=False)
    status = Column(String, nullable=False, default="active")
    expires_at = Column(Float, nullable=True)
    payment_id = Column(String, nullable=True)
    updated_at = Column(Float, nullable=False)

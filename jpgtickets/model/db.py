from sqlalchemy.orm import declarative_base
from sqlalchemy import (
    Column,
    Integer,
    String,
    Float,
    Text,
    JSON,
    ForeignKey,
    UniqueConstraint,
)


Base = declarative_base()

# pending | paid | failed | refunded
STATUS_PENDING = "pending"
STATUS_PAID = "paid"
STATUS_FAILED = "failed"
STATUS_REFUNDED = "refunded"
PAYMENT_STATUSES = (STATUS_PENDING, STATUS_PAID, STATUS_FAILED,
                    STATUS_REFUNDED)

GAME_MODES = ("solo", "dupla", "trio", "squad")
TOURNAMENT_STATUSES = ("upcoming", "open", "in_progress", "finished",
                       "cancelled")


# ----------------------------
# ORM models
# ----------------------------
class Tournament(Base):
    __tablename__ = "tournaments"
    id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    game = Column(String, nullable=False, default="freefire")
    game_mode = Column(String, nullable=False, default="solo")
    entry_fee = Column(Float, nullable=False, default=0.0)  # BRL
    max_participants = Column(Integer, nullable=True)
    start_date = Column(Float, nullable=False)
    status = Column(String, nullable=False, default="upcoming")
    room_id = Column(String, nullable=True)
    room_password = Column(String, nullable=True)
    created_at = Column(Float, nullable=False)
    updated_at = Column(Float, nullable=False)


class Participation(Base):
    __tablename__ = "participations"
    __table_args__ = (
        UniqueConstraint("tournament_id", "slot_number",
                         name="uq_participation_tournament_slot"),
    )
    id = Column(String, primary_key=True)
    user_id = Column(String, nullable=False, index=True)
    tournament_id = Column(
        String, ForeignKey("tournaments.id"), nullable=False, index=True
    )
    payment_status = Column(String, nullable=False, default=STATUS_PENDING)

    # provider-side charge id; the webhook's fallback join key
    mercado_pago_payment_id = Column(String, nullable=True, index=True)
    payment_created_at = Column(Float, nullable=True)

    # minted once, on the first transition into paid
    unique_token = Column(String, nullable=True, unique=True)
    slot_number = Column(Integer, nullable=True)

    partner_nick = Column(String, nullable=True)
    partner_2_nick = Column(String, nullable=True)
    partner_3_nick = Column(String, nullable=True)

    created_at = Column(Float, nullable=False)
    updated_at = Column(Float, nullable=False)


class Setting(Base):
    __tablename__ = "settings"
    key = Column(String, primary_key=True)
    value = Column(Text, nullable=True)
    updated_at = Column(Float, nullable=False)


class WebhookLog(Base):
    __tablename__ = "webhook_logs"
    id = Column(Integer, primary_key=True, autoincrement=True)
    source = Column(String, nullable=False, default="mercadopago")
    method = Column(String, nullable=False)
    headers = Column(JSON, nullable=True)
    body = Column(JSON, nullable=True)
    query_params = Column(JSON, nullable=True)
    status_code = Column(Integer, nullable=True)
    response = Column(JSON, nullable=True)
    error_message = Column(Text, nullable=True)
    created_at = Column(Float, nullable=False, index=True)

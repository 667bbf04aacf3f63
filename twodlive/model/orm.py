from sqlalchemy.orm import declarative_base
from sqlalchemy import (
    Column,
    Integer,
    String,
    Float,
    Boolean,
)


Base = declarative_base()


# ----------------------------
# ORM models
# ----------------------------
class UserRow(Base):
    __tablename__ = "users"
    id = Column(String, primary_key=True)
    # the unique constraint is the username -> id index
    username = Column(String, nullable=False, unique=True)
    password_hash = Column(String, nullable=False)
    balance = Column(Float, nullable=False, default=0.0)
    is_admin = Column(Boolean, nullable=False, default=False)
    created_at = Column(Float, nullable=False)


class BootstrapClaim(Base):
    # a single row; whoever inserts it first is the bootstrap admin
    __tablename__ = "bootstrap_claims"
    key = Column(String, primary_key=True)
    user_id = Column(String, nullable=False)


class ResultRow(Base):
    __tablename__ = "results"
    id = Column(Integer, primary_key=True, autoincrement=True)
    twod = Column(String(2), nullable=False)
    emitted_at = Column(Float, nullable=False, index=True)
    source = Column(String, nullable=False, default="manual")

"""Column types shared by the commission models.

Everything here must work on both PostgreSQL (production) and SQLite (tests).
"""
from sqlalchemy import JSON, BigInteger, Integer, Numeric
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.dialects.postgresql import UUID as PG_UUID

# JSONB on PostgreSQL, plain JSON everywhere else
JSONType = JSON().with_variant(JSONB(), "postgresql")

# Native uuid on PostgreSQL, CHAR(32) on SQLite
UUIDType = PG_UUID

# Money is stored as integer minor units (cents); never as floats.
# SQLite only autoincrements/handles INTEGER, so fall back there.
MinorUnits = BigInteger().with_variant(Integer(), "sqlite")

# Commission rates are fractions in [0, 1] with four decimal places (0.1250 = 12.5%)
RateType = Numeric(5, 4)

import logging

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, scoped_session
from sqlalchemy.pool import StaticPool

from . import config
from .models import Base, Meal

logger = logging.getLogger(__name__)


def _make_engine(url):
    if url in ("sqlite://", "sqlite:///:memory:"):
        # one shared connection, otherwise every pooled connection gets its own empty db
        return create_engine(
            url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    return create_engine(url)


engine = _make_engine(config.DATABASE_URL)
DBSession = scoped_session(sessionmaker(bind=engine))

# NDX school meal catalogue
MEALS = [
    {
        "id": "meal_001",
        "name": "Rice and Curry",
        "description": "Traditional Sri Lankan rice with mixed vegetables and dhal curry",
        "price": 50.00,
        "subsidy_amount": 30.00,
        "nutrition_score": 85,
        "available": True,
        "max_quantity_per_day": 100,
        "current_quantity": 95,
    },
    {
        "id": "meal_002",
        "name": "Chicken Sandwich",
        "description": "Grilled chicken sandwich with fresh vegetables",
        "price": 80.00,
        "subsidy_amount": 20.00,
        "nutrition_score": 75,
        "available": True,
        "max_quantity_per_day": 50,
        "current_quantity": 48,
    },
]


def insert_meals(session):
    if session.query(Meal).count() == 0:
        for item in MEALS:
            session.add(Meal(**item))
        session.commit()
        logger.info("Seeded %d meals", len(MEALS))


def init_db():
    Base.metadata.create_all(engine)
    session = DBSession()
    try:
        insert_meals(session)
    finally:
        DBSession.remove()


def reset_db():
    """Drop and recreate every table, then reseed the catalogue."""
    DBSession.remove()
    Base.metadata.drop_all(engine)
    init_db()

"""Meal catalogue and daily availability counters (NDX integration point)."""
import logging

from .models import Meal

logger = logging.getLogger(__name__)


class MealService:
    def __init__(self, session_factory):
        self.session_factory = session_factory

    def get_meal(self, meal_id):
        return self.session_factory().get(Meal, meal_id)

    def list_meals(self):
        return self.session_factory().query(Meal).order_by(Meal.id).all()

    def update_availability(self, meal_id, quantity):
        """Take ``quantity`` portions off the counter. No lower bound."""
        self._adjust(meal_id, -quantity)
        logger.info("Updated availability for %s: -%d", meal_id, quantity)

    def restore_availability(self, meal_id, quantity):
        self._adjust(meal_id, quantity)
        logger.info("Restored availability for %s: +%d", meal_id, quantity)

    def _adjust(self, meal_id, delta):
        session = self.session_factory()
        session.query(Meal).filter(Meal.id == meal_id).update(
            {Meal.current_quantity: Meal.current_quantity + delta},
            synchronize_session="fetch",
        )
        session.commit()

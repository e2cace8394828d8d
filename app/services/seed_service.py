"""Service for seeding default data to handle cold start scenarios."""
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import List

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.loyalty import LightningDeal, LoyaltyReward
from app.models.restaurant import Restaurant
from app.models.user import User

logger = logging.getLogger(__name__)


# Default restaurant config
DEFAULT_RESTAURANT_CONFIG = {
    "waitlist": {
        "average_table_turnover": 25,
        "concurrent_tables": 1,
    },
}

# Staff accounts for the default restaurant
DEFAULT_STAFF = [
    {"name": "Olivia Owner", "email": "owner@example.com", "role": "owner"},
    {"name": "Sam Staff", "email": "staff@example.com", "role": "staff"},
]

# Customers with balances spread across the three tiers
DEFAULT_CUSTOMERS = [
    {"name": "Casey Regular", "email": "casey@example.com", "points": 150, "lifetime": 320},
    {"name": "Vic Important", "email": "vic@example.com", "points": 640, "lifetime": 780},
    {"name": "Pat Premium", "email": "pat@example.com", "points": 1200, "lifetime": 2150},
]

DEFAULT_REWARDS = [
    {"name": "Free Coffee", "description": "Any hot coffee drink", "points_required": 100},
    {"name": "Free Appetizer", "description": "Any appetizer from the menu", "points_required": 250},
    {"name": "Free Entree", "description": "Any entree up to $25", "points_required": 500},
]

DEFAULT_DEALS = [
    {
        "title": "Half-Price Wings",
        "description": "A dozen wings for the first 20 guests",
        "original_price": Decimal("16.00"),
        "deal_price": Decimal("8.00"),
        "total_available": 20,
        "hours": 2,
    },
    {
        "title": "Lunch Combo",
        "description": "Sandwich, side and drink",
        "original_price": Decimal("18.50"),
        "deal_price": Decimal("12.00"),
        "total_available": 50,
        "hours": 4,
    },
]


class SeedService:
    """
    Service for seeding default data.

    Handles cold start by creating a default restaurant with staff,
    customers, loyalty rewards and lightning deals when the database is empty.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def ensure_default_data(self) -> dict:
        """
        Ensure default data exists for cold start.

        Returns:
            Dict with created counts
        """
        result = {
            "restaurants_created": 0,
            "users_created": 0,
            "rewards_created": 0,
            "deals_created": 0,
            "already_seeded": False,
        }

        if await self._count_restaurants() > 0:
            result["already_seeded"] = True
            logger.info("Database already has data, skipping seed")
            return result

        logger.info("Cold start detected, seeding default data...")

        restaurant = await self._create_default_restaurant()
        result["restaurants_created"] = 1

        users = await self._create_default_users(restaurant)
        result["users_created"] = len(users)

        rewards = await self._create_default_rewards(restaurant)
        result["rewards_created"] = len(rewards)

        deals = await self._create_default_deals(restaurant)
        result["deals_created"] = len(deals)

        await self.session.commit()

        logger.info(
            "Seed complete: %d restaurants, %d users, %d rewards, %d deals",
            result["restaurants_created"],
            result["users_created"],
            result["rewards_created"],
            result["deals_created"],
        )
        return result

    async def _count_restaurants(self) -> int:
        """Count total restaurants."""
        result = await self.session.execute(select(func.count(Restaurant.id)))
        return result.scalar_one()

    async def _create_default_restaurant(self) -> Restaurant:
        restaurant = Restaurant(
            name="The Golden Fork",
            timezone="America/New_York",
            config=DEFAULT_RESTAURANT_CONFIG,
        )
        self.session.add(restaurant)
        await self.session.flush()
        return restaurant

    async def _create_default_users(self, restaurant: Restaurant) -> List[User]:
        users = [
            User(
                name=data["name"],
                email=data["email"],
                role=data["role"],
                restaurant_id=restaurant.id,
            )
            for data in DEFAULT_STAFF
        ]
        users.extend(
            User(
                name=data["name"],
                email=data["email"],
                role="customer",
                loyalty_points=data["points"],
                lifetime_points=data["lifetime"],
            )
            for data in DEFAULT_CUSTOMERS
        )
        self.session.add_all(users)
        await self.session.flush()
        return users

    async def _create_default_rewards(self, restaurant: Restaurant) -> List[LoyaltyReward]:
        rewards = [LoyaltyReward(restaurant_id=restaurant.id, **data) for data in DEFAULT_REWARDS]
        self.session.add_all(rewards)
        await self.session.flush()
        return rewards

    async def _create_default_deals(self, restaurant: Restaurant) -> List[LightningDeal]:
        now = datetime.utcnow()
        deals = []
        for data in DEFAULT_DEALS:
            data = dict(data)
            hours = data.pop("hours")
            deals.append(
                LightningDeal(
                    restaurant_id=restaurant.id,
                    start_time=now,
                    end_time=now + timedelta(hours=hours),
                    claimed=0,
                    **data,
                )
            )
        self.session.add_all(deals)
        await self.session.flush()
        return deals

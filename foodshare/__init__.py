"""
FoodShare backend package.

Provides a FastAPI application for the food-donation marketplace: users,
food listings, food requests and payment records, with store, identity and
payment collaborators injected through ``foodshare.dependencies``.
"""

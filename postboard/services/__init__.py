# Services package.
#
# Each module exposes a focused set of async functions that encapsulate
# business logic and database access for a single aggregate:
#
#   post_service      — visibility, ownership guards and derived fields for Post
#   favorite_service  — the idempotent favorite / strict unfavorite toggle
#   comment_service   — comment listing (cached) and creation
#   user_service      — registration, login, tokens and profile for User
#   avatar_storage    — validation and on-disk storage of avatar uploads
#
# All service functions accept an AsyncSession as their first argument so
# that the router layer controls the transaction boundary via ``get_db``.
# Domain failures are returned as ``ServiceError`` values, not raised.

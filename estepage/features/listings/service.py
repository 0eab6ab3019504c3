"""
Listing counts for quota checks.

Counts are always read fresh; nothing is cached between requests.
"""

from typing import Optional

from sqlalchemy import func, select

from estepage.core.database import SessionFactory, get_db_session, listing_images, listings


class ListingStore:
    def __init__(self, session_factory: SessionFactory = get_db_session):
        self._session_factory = session_factory

    def count_listings_owned_by(self, tenant_id: str) -> int:
        with self._session_factory() as session:
            return session.execute(
                select(func.count()).select_from(listings).where(listings.c.tenant_id == tenant_id)
            ).scalar() or 0

    def count_images(self, listing_id: int) -> int:
        with self._session_factory() as session:
            return session.execute(
                select(func.count())
                .select_from(listing_images)
                .where(listing_images.c.listing_id == listing_id)
            ).scalar() or 0

    def get_owner(self, listing_id: int) -> Optional[str]:
        with self._session_factory() as session:
            return session.execute(
                select(listings.c.tenant_id).where(listings.c.id == listing_id)
            ).scalar()

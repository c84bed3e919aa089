from __future__ import annotations

from datetime import datetime
from typing import Iterable, List, Optional, Set

from sqlalchemy import DateTime, ForeignKey, Integer, String, UniqueConstraint, create_engine, func, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship, sessionmaker

from .exceptions import PersistenceConflict
from .models import NewsItem, NewsSource, Region


class Base(DeclarativeBase):
    pass


class NewsSourceRow(Base):
    __tablename__ = "news_source"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(200), unique=True, nullable=False)


class NewsRow(Base):
    __tablename__ = "news"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    title: Mapped[str] = mapped_column(String(1000), nullable=False)
    link: Mapped[str] = mapped_column(String(1000), nullable=False)
    written_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    news_source_id: Mapped[int] = mapped_column(ForeignKey("news_source.id"), index=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    __table_args__ = (UniqueConstraint("news_source_id", "link", name="uq_news_source_link"),)
    source = relationship("NewsSourceRow")


class RegionRow(Base):
    __tablename__ = "region"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(200), unique=True, nullable=False)


class SubscriptionRow(Base):
    __tablename__ = "subscription"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    chat_id: Mapped[str] = mapped_column(String(500), index=True, nullable=False)
    region_id: Mapped[int] = mapped_column(ForeignKey("region.id", ondelete="CASCADE"), nullable=False)
    __table_args__ = (UniqueConstraint("chat_id", "region_id", name="uq_subscription_chat_region"),)
    region = relationship("RegionRow")


class Catalog:
    """
    Relational side of the watcher: reference rows, stored news and the
    subscriber directory.

    Each call runs in its own short session, so one failing write never
    poisons the next one.
    """

    def __init__(self, engine: Engine) -> None:
        self.engine = engine
        self._session = sessionmaker(bind=engine, expire_on_commit=False)

    @classmethod
    def from_url(cls, url: str, **kwargs) -> "Catalog":
        return cls(create_engine(url, **kwargs))

    def create_all(self) -> None:
        Base.metadata.create_all(self.engine)

    def close(self) -> None:
        self.engine.dispose()

    # Reference rows

    def _find_or_create(self, model, name: str):
        with self._session() as session:
            row = session.scalars(select(model).where(model.name == name)).first()
            if row is not None:
                return row
            row = model(name=name)
            session.add(row)
            try:
                session.commit()
                return row
            except IntegrityError:
                # Created concurrently; the existing row wins
                session.rollback()
        with self._session() as session:
            return session.scalars(select(model).where(model.name == name)).one()

    def find_or_create_source(self, name: str) -> NewsSource:
        row = self._find_or_create(NewsSourceRow, name)
        return NewsSource(id=row.id, name=row.name)

    def find_or_create_region(self, name: str) -> Region:
        row = self._find_or_create(RegionRow, name)
        return Region(id=row.id, name=row.name)

    def get_region(self, name: str) -> Optional[Region]:
        with self._session() as session:
            row = session.scalars(select(RegionRow).where(RegionRow.name == name)).first()
            return Region(id=row.id, name=row.name) if row else None

    def list_regions(self) -> List[Region]:
        with self._session() as session:
            rows = session.scalars(select(RegionRow).order_by(RegionRow.name)).all()
            return [Region(id=r.id, name=r.name) for r in rows]

    def regions_matching(self, pattern: str) -> List[Region]:
        """Case-insensitive LIKE match, e.g. `%province%`."""
        with self._session() as session:
            rows = session.scalars(
                select(RegionRow).where(RegionRow.name.ilike(pattern)).order_by(RegionRow.name)
            ).all()
            return [Region(id=r.id, name=r.name) for r in rows]

    # News

    def list_seen_links(self, source_id: int) -> Set[str]:
        with self._session() as session:
            return set(session.scalars(select(NewsRow.link).where(NewsRow.news_source_id == source_id)))

    def insert_news(self, item: NewsItem, source_id: int) -> None:
        """Plain insert. Raises PersistenceConflict when the (source, link) row exists."""
        with self._session() as session:
            session.add(NewsRow(
                title=item.title,
                link=item.link,
                written_at=item.written_at,
                news_source_id=source_id,
            ))
            try:
                session.commit()
            except IntegrityError as e:
                session.rollback()
                raise PersistenceConflict(f"News {item.link} already stored for source {source_id}") from e

    def upsert_news(self, item: NewsItem, source_id: int) -> bool:
        """
        Idempotent store keyed on (title, link, written_at, source).

        Returns True when a row was inserted, False when it was already there.
        Other database errors propagate.
        """
        with self._session() as session:
            existing = session.scalars(
                select(NewsRow.id).where(
                    NewsRow.news_source_id == source_id,
                    NewsRow.link == item.link,
                    NewsRow.title == item.title,
                    NewsRow.written_at == item.written_at,
                )
            ).first()
        if existing is not None:
            return False
        try:
            self.insert_news(item, source_id)
        except PersistenceConflict:
            return False
        return True

    def count_news(self, source_id: int) -> int:
        with self._session() as session:
            return session.scalar(
                select(func.count()).select_from(NewsRow).where(NewsRow.news_source_id == source_id)
            ) or 0

    # Subscriber directory

    def subscribers_of(self, region_id: int) -> List[str]:
        return self.subscribers_of_any([region_id])

    def subscribers_of_any(self, region_ids: Iterable[int]) -> List[str]:
        """Distinct recipients subscribed to at least one of the regions."""
        ids = list(region_ids)
        if not ids:
            return []
        with self._session() as session:
            return list(session.scalars(
                select(SubscriptionRow.chat_id)
                .where(SubscriptionRow.region_id.in_(ids))
                .group_by(SubscriptionRow.chat_id)
                .order_by(SubscriptionRow.chat_id)
            ))

    def subscribe(self, chat_id: str, region_name: str) -> bool:
        """
        Find-or-create a subscription. Returns False when the region is unknown.
        """
        region = self.get_region(region_name)
        if region is None:
            return False
        with self._session() as session:
            exists = session.scalars(
                select(SubscriptionRow.id).where(
                    SubscriptionRow.chat_id == chat_id, SubscriptionRow.region_id == region.id
                )
            ).first()
            if exists is not None:
                return True
            session.add(SubscriptionRow(chat_id=chat_id, region_id=region.id))
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
        return True

    def unsubscribe(self, chat_id: str, region_name: str) -> bool:
        region = self.get_region(region_name)
        if region is None:
            return False
        with self._session() as session:
            row = session.scalars(
                select(SubscriptionRow).where(
                    SubscriptionRow.chat_id == chat_id, SubscriptionRow.region_id == region.id
                )
            ).first()
            if row is None:
                return False
            session.delete(row)
            session.commit()
            return True

    def subscriptions_of(self, chat_id: str) -> List[str]:
        with self._session() as session:
            return list(session.scalars(
                select(RegionRow.name)
                .join(SubscriptionRow, SubscriptionRow.region_id == RegionRow.id)
                .where(SubscriptionRow.chat_id == chat_id)
                .order_by(RegionRow.name)
            ))

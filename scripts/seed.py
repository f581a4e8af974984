"""Database seeder: roles, an admin, a few users and articles spread
across past, current and future publication windows."""
import asyncio
import argparse
import random
import time
from datetime import datetime, timezone, timedelta

from bulletin.config import settings
from bulletin.database import engine, async_session, Base
from bulletin.models import Article, User
from bulletin.security.passwords import hash_password
from bulletin.services.user_service import ensure_roles

TOPICS = ["maintenance", "holiday", "meeting", "release", "security",
          "training", "outage", "welcome", "policy", "survey"]


def _window(now: datetime) -> tuple[datetime | None, datetime | None]:
    """Pick a window that is expired, current, upcoming or undated."""
    kind = random.choices(["past", "current", "future", "undated"], weights=[2, 6, 2, 1])[0]
    if kind == "past":
        end = now - timedelta(days=random.randint(1, 60))
        return end - timedelta(days=random.randint(1, 30)), end
    if kind == "current":
        return (now - timedelta(days=random.randint(0, 30), hours=1),
                now + timedelta(days=random.randint(1, 60)))
    if kind == "future":
        start = now + timedelta(days=random.randint(1, 30))
        return start, start + timedelta(days=random.randint(1, 30))
    return None, None


async def seed(small: bool = False, password: str = "password"):
    num_users = 5 if small else 25
    num_articles = 50 if small else 2000

    print(f"Seeding: {num_users} users, {num_articles} articles")
    start = time.perf_counter()

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)

    async with async_session() as session:
        roles = {r.name: r for r in await ensure_roles(session, settings.DEFAULT_ROLES)}
        print(f"  Created roles: {', '.join(sorted(roles))}")

        # One hash for everyone; bcrypt is deliberately slow.
        password_hash = hash_password(password)
        users = [User(username="admin", password_hash=password_hash,
                      roles=[roles["ROLE_USER"], roles["ROLE_ADMIN"]])]
        for i in range(num_users):
            users.append(User(username=f"user_{i:03d}", password_hash=password_hash,
                              roles=[roles["ROLE_USER"]]))
        session.add_all(users)
        await session.flush()
        print(f"  Created {len(users)} users (password: {password!r})")

        now = datetime.now(timezone.utc)
        for i in range(num_articles):
            topic = random.choice(TOPICS)
            start_date, end_date = _window(now)
            session.add(Article(
                title=f"{topic.capitalize()} notice {i}"[:30],
                content=f"Details about the {topic} announcement number {i}. " * 5,
                start_date=start_date,
                end_date=end_date,
                read_count=random.randint(0, 500),
                user_id=random.choice(users).id,
            ))
        await session.commit()

    elapsed = time.perf_counter() - start
    print(f"\nSeeding complete in {elapsed:.1f}s")


def main():
    parser = argparse.ArgumentParser(description="Seed the bulletin board database")
    parser.add_argument("--small", action="store_true", help="Use small dataset (50 articles)")
    parser.add_argument("--password", default="password", help="Password given to every seeded user")
    args = parser.parse_args()
    asyncio.run(seed(small=args.small, password=args.password))


if __name__ == "__main__":
    main()

"""Database seeder: users, published posts and drafts, comments and favorites."""
import asyncio
import argparse
import random
import time
from datetime import timedelta

from postboard.database import engine, async_session, Base
from postboard.models import Category, Comment, Favorite, Post, User, utcnow
from postboard.security import hash_password
from postboard.services.post_service import make_preview_text

CATEGORIES = ["python", "fastapi", "postgresql", "redis", "docker", "notes",
              "travel", "reading", "testing", "performance", "security"]

DEFAULT_PASSWORD = "password123"


async def seed(small: bool = False):
    num_users = 5 if small else 50
    num_posts = 50 if small else 5000
    num_comments_per_post = 2 if small else 5

    print(f"Seeding: {num_users} users, {num_posts} posts, ~{num_posts * num_comments_per_post} comments")
    start = time.perf_counter()

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)

    async with async_session() as session:
        categories = [Category(name=name) for name in CATEGORIES]
        session.add_all(categories)
        await session.flush()
        print(f"  Created {len(categories)} categories")

        # One hash for everyone keeps seeding fast.
        password_hash = hash_password(DEFAULT_PASSWORD)
        users = [
            User(email=f"user_{i:04d}@example.com", name=f"User {i}", password_hash=password_hash)
            for i in range(num_users)
        ]
        session.add_all(users)
        await session.flush()
        print(f"  Created {len(users)} users (password: {DEFAULT_PASSWORD})")

        now = utcnow()
        posts = []
        for i in range(num_posts):
            created = now - timedelta(hours=random.randint(1, 24 * 365))
            content = f"<p>Post number {i}. " + "Lorem ipsum dolor sit amet. " * random.randint(2, 20) + "</p>"
            post = Post(
                title=f"Post {i}: notes on {random.choice(CATEGORIES)}",
                content=content,
                preview_text=make_preview_text(content),
                published=random.random() < 0.8,
                author_id=random.choice(users).id,
                created_at=created,
                updated_at=created,
                last_edited_at=created + timedelta(minutes=random.randint(0, 600)),
            )
            post.categories.extend(random.sample(categories, k=random.randint(0, 3)))
            posts.append(post)
        session.add_all(posts)
        await session.flush()
        print(f"  Created {len(posts)} posts")

        comments = [
            Comment(
                content=f"Comment {j} on post {post.id}",
                post_id=post.id,
                author_id=random.choice(users).id,
            )
            for post in posts
            if post.published
            for j in range(num_comments_per_post)
        ]
        session.add_all(comments)

        favorites = {
            (user.id, post.id)
            for user in users
            for post in random.sample(posts, k=min(len(posts), 10))
            if post.published
        }
        session.add_all(Favorite(user_id=u, post_id=p) for u, p in favorites)
        await session.commit()
        print(f"  Created {len(comments)} comments and {len(favorites)} favorites")

    print(f"Done in {time.perf_counter() - start:.1f}s")


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Seed the postboard database")
    parser.add_argument("--small", action="store_true", help="Seed a small dataset")
    args = parser.parse_args()
    asyncio.run(seed(small=args.small))

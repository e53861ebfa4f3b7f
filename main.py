"""Verify MongoDB connectivity and initialize indexes."""

import asyncio

from showparser.db import close_db, get_client, get_db, init_db
from showparser.review import COLLECTION


async def main() -> None:
    client = get_client()
    db = get_db()

    # Ping to verify connection
    result = await client.admin.command("ping")
    print(f"MongoDB ping: {result}")

    # Initialize indexes
    await init_db()
    print(f"Indexes created on '{COLLECTION}'.")

    pending = await db[COLLECTION].count_documents({"status": "pending_review"})
    print(f"Records awaiting review: {pending}")

    await close_db()
    print("Done.")


if __name__ == "__main__":
    asyncio.run(main())

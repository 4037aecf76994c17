"""Create the signaling tables and report any rooms left behind by earlier runs."""
from __future__ import annotations

import asyncio
import sys

from callroom.core.config import settings
from callroom.db.session import create_engine, create_schema, create_session_factory
from callroom.services.sql_store import SqlSignalingStore


async def main(purge: bool = False) -> None:
	engine = create_engine(settings.database_url)
	try:
		await create_schema(engine)
		store = SqlSignalingStore(create_session_factory(engine))
		rooms = await store.list_rooms()
		for room in rooms:
			state = "answered" if room.answer is not None else "waiting"
			print(f"{room.id}  {room.creator}  {room.created_at:%Y-%m-%d %H:%M}  {state}")
			if purge:
				await store.delete_room(room.id)
		print(f"Database schema ensured at {settings.database_url}; {len(rooms)} room(s) found.")
		if purge and rooms:
			print("Stale rooms deleted.")
	finally:
		await engine.dispose()


if __name__ == "__main__":
	asyncio.run(main(purge="--purge" in sys.argv[1:]))

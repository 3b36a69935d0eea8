from fastapi import Request
from motor.motor_asyncio import AsyncIOMotorClient
from pymongo import ReadPreference
from pymongo.read_concern import ReadConcern
from pymongo.write_concern import WriteConcern


class LedgerStore:
    """
    Process-wide storage handle.

    Built once by the entry point, injected everywhere else.
    run_transaction() is the only way multi-document mutations are applied.
    """

    def __init__(self, client, db_name: str | None = None, *, transactions: bool = True):
        self.client = client
        self.db = client[db_name] if db_name else client.get_default_database()
        self.transactions = transactions

    @classmethod
    def from_uri(cls, uri: str, db_name: str | None = None, *, transactions: bool = True):
        if not uri:
            raise RuntimeError("MONGODB_URI not set")
        client = AsyncIOMotorClient(uri, serverSelectionTimeoutMS=10_000)
        return cls(client, db_name, transactions=transactions)

    async def run_transaction(self, callback):
        """
        Run callback(session) atomically.
        Transient write conflicts are retried by the driver.
        """
        if not self.transactions:
            return await callback(None)

        async with await self.client.start_session() as session:
            return await session.with_transaction(
                callback,
                read_concern=ReadConcern("snapshot"),
                write_concern=WriteConcern("majority"),
                read_preference=ReadPreference.PRIMARY,
            )

    async def ping(self):
        return await self.db.command("ping")

    def close(self):
        self.client.close()


def get_store(request: Request) -> LedgerStore:
    return request.app.state.store


def get_db(request: Request):
    return request.app.state.store.db

"""Call store — synced CallRecords, keyed by call id and findable by content file id."""

from config.schemas import CallRecord
from services.store.documents import DocumentCollection, store_operation


class CallStore:
    def __init__(self, collection: DocumentCollection | None = None):
        self._docs = collection if collection is not None else DocumentCollection("calls")

    async def upsert(self, call: CallRecord) -> None:
        await store_operation(
            "upsertCall",
            lambda: self._docs.set(call.id, call.model_dump(mode="json"), merge=True),
            flush=self._docs,
        )

    async def get(self, call_id: str) -> CallRecord | None:
        doc = await store_operation("getCall", lambda: self._docs.get(call_id))
        return CallRecord.model_validate(doc) if doc else None

    async def get_by_file_id(self, file_id: str) -> CallRecord | None:
        docs = await store_operation("getCallByFileId", lambda: self._docs.where(file_id=file_id))
        return CallRecord.model_validate(docs[0]) if docs else None

    async def list_for_user(self, user_email: str) -> list[CallRecord]:
        """Calls the user took part in, newest call date first."""
        email = user_email.lower().strip()
        docs = await store_operation("getCallsForUser", self._docs.all)
        calls = [
            CallRecord.model_validate(d) for d in docs
            if any(p.get("email", "").lower().strip() == email for p in d.get("participants", []))
        ]
        return sorted(calls, key=lambda c: c.call_date, reverse=True)

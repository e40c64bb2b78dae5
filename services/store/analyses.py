"""Analysis job store — one document per AnalysisJob, keyed by job id."""

import time

from config.schemas import AnalysisJob, JobStatus
from services.errors import external_service_error
from services.store.documents import SERVICE, DocumentCollection, store_operation


class AnalysisStore:
    def __init__(self, collection: DocumentCollection | None = None):
        self._docs = collection if collection is not None else DocumentCollection("analyses")

    async def create(self, job: AnalysisJob) -> None:
        def create():
            if self._docs.exists(job.id):
                raise external_service_error(SERVICE, f"createAnalysis failed: '{job.id}' already exists", operation="createAnalysis")
            self._docs.set(job.id, job.model_dump(mode="json"))

        await store_operation("createAnalysis", create, flush=self._docs)

    async def update(self, job_id: str, **fields) -> AnalysisJob:
        """Apply a partial update. Status may only move forward.

        Raises:
            AppError (EXTERNAL_SERVICE): unknown job, or a backwards / repeated status write.
        """
        def update():
            current = self._docs.get(job_id)
            if current is None:
                raise external_service_error(SERVICE, f"updateAnalysis failed: no analysis '{job_id}'", operation="updateAnalysis")

            if "status" in fields:
                old, new = JobStatus(current["status"]), JobStatus(fields["status"])
                if not old.can_transition_to(new):
                    raise external_service_error(
                        SERVICE,
                        f"updateAnalysis failed: illegal transition {old.value} -> {new.value} for '{job_id}'",
                        operation="updateAnalysis",
                    )
                fields["status"] = new.value

            doc = self._docs.update(job_id, {**fields, "updated_at": time.time()})
            return AnalysisJob.model_validate(doc)

        return await store_operation("updateAnalysis", update, flush=self._docs)

    async def get(self, job_id: str) -> AnalysisJob | None:
        doc = await store_operation("getAnalysis", lambda: self._docs.get(job_id))
        return AnalysisJob.model_validate(doc) if doc else None

    async def count_for_call(self, call_id: str, user_id: str) -> int:
        return await store_operation(
            "getAnalysisCountForCall",
            lambda: len(self._docs.where(call_id=call_id, user_id=user_id)),
        )

    async def get_latest(self, call_id: str, user_id: str) -> AnalysisJob | None:
        """Highest-version job for this call and user, whatever its status."""
        docs = await store_operation(
            "getLatestAnalysis",
            lambda: self._docs.where(call_id=call_id, user_id=user_id),
        )
        if not docs:
            return None
        return AnalysisJob.model_validate(max(docs, key=lambda d: d["version"]))

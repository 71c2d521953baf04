"""PRD generation and refinement.

Drives one request end-to-end: validate input, resolve a credential, open the
provider stream, forward fragments to the caller while accumulating them, and
save the finished document.
"""
from dataclasses import dataclass
from typing import AsyncIterator, Callable, List, Optional

from ai.adapters.credentials import CredentialResolver
from ai.adapters.providers import ProviderAdapter, ProviderCredential, UpstreamStream
from ai.prompts import (
    ENHANCED_SUFFIX,
    REFINEMENT_SEPARATOR,
    SYSTEM_PROMPT,
    build_generation_message,
    build_refinement_message,
    derive_title,
)
from core.audit import audit_prd_change
from core.config import Config
from core.errors import ExternalToolError, PermissionDenied, PersistenceError, ValidationError
from core.logging import logger
from core.monitoring import MonitoringService
from core.security import Caller, RBACService
from services.storage import ApiKeyStore, PRDRecord, PRDRecordDraft, PRDStore

KIND_GENERATE = "generate"
KIND_REFINE = "refine"


class DraftView:
    """The PRD text a caller is currently looking at."""

    def __init__(self, content: str = "", on_change: Optional[Callable[[str], None]] = None):
        self._content = content
        self._on_change = on_change

    @property
    def content(self) -> str:
        return self._content

    def _set(self, content: str) -> None:
        self._content = content
        if self._on_change:
            self._on_change(content)

    def clear(self) -> None:
        self._set("")

    def append(self, fragment: str) -> None:
        self._set(self._content + fragment)

    def restore(self, content: str) -> None:
        self._set(content)


@dataclass
class GenerationResult:
    content: str
    provider: str
    record: Optional[PRDRecord] = None


class GenerationRun:
    """A single validated generate/refine stream.

    Use as ``async with run: async for fragment in run.fragments(): ...``.
    The upstream response is released on every exit path.
    """

    def __init__(
        self,
        service: "PRDService",
        kind: str,
        user_message: str,
        owner_id: Optional[str],
        draft_factory: Callable[[str], PRDRecordDraft],
    ):
        self._service = service
        self.kind = kind
        self.user_message = user_message
        self.owner_id = owner_id
        self._draft_factory = draft_factory
        self._parts: List[str] = []
        self._stream: Optional[UpstreamStream] = None
        self.credential: Optional[ProviderCredential] = None
        self.record: Optional[PRDRecord] = None
        self.finished = False

    @property
    def content(self) -> str:
        return "".join(self._parts)

    async def start(self) -> None:
        """Resolves the credential and opens the upstream stream.

        Classified upstream errors (rate limit, quota, credentials) surface
        here, before the first fragment.
        """
        if self._stream is not None:
            return
        try:
            self.credential = await self._service.resolver.resolve(self.owner_id)
            self._stream = await self._service.adapter.call(
                self.credential, SYSTEM_PROMPT, self.user_message
            )
        except ExternalToolError as e:
            self._service.monitoring.log_upstream_error(type(e).__name__)
            self._service.monitoring.log_generation(self.kind, "error")
            raise

    async def fragments(self) -> AsyncIterator[str]:
        if self._stream is None:
            await self.start()
        completed = False
        try:
            async for text in self._stream.text_deltas():
                self._parts.append(text)
                yield text
            completed = True
        except ExternalToolError as e:
            self._service.monitoring.log_upstream_error(type(e).__name__)
            raise
        finally:
            await self.close()
            if not completed:
                self._service.monitoring.log_generation(self.kind, "error")

        self.finished = True
        self._service.monitoring.log_generation(self.kind, "success")
        logger.info(f"PRD {self.kind} finished with {len(self.content)} characters")
        self.record = await self._persist()

    async def _persist(self) -> Optional[PRDRecord]:
        content = self.content
        if not content.strip() or not self.owner_id or self._service.store is None:
            return None
        try:
            record = await self._service.store.insert(self._draft_factory(content))
        except PersistenceError as e:
            # The generated text is still returned to the caller.
            logger.error(f"Failed to save PRD for {self.owner_id}: {e}")
            return None
        audit_prd_change(self.owner_id, record.id, self.kind, "CREATED")
        return record

    def result(self) -> GenerationResult:
        provider = self.credential.provider if self.credential else ""
        return GenerationResult(content=self.content, provider=provider, record=self.record)

    async def close(self) -> None:
        if self._stream is not None:
            stream, self._stream = self._stream, None
            await stream.aclose()

    async def __aenter__(self) -> "GenerationRun":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()


class PRDService:
    """Generation orchestrator plus PRD history access."""

    def __init__(
        self,
        resolver: CredentialResolver,
        adapter: ProviderAdapter,
        store: Optional[PRDStore] = None,
        monitoring: Optional[MonitoringService] = None,
        rbac: Optional[RBACService] = None,
    ):
        self.resolver = resolver
        self.adapter = adapter
        self.store = store
        self.monitoring = monitoring or MonitoringService()
        self.rbac = rbac or RBACService()

    @classmethod
    def from_config(cls, config: Config, monitoring: Optional[MonitoringService] = None) -> "PRDService":
        app = config.app
        key_store = ApiKeyStore(app.DATABASE_PATH)
        return cls(
            resolver=CredentialResolver(config.providers, app, key_store),
            adapter=ProviderAdapter(
                timeout=app.REQUEST_TIMEOUT_SECONDS,
                connect_timeout=app.CONNECT_TIMEOUT_SECONDS,
                anthropic_max_tokens=app.ANTHROPIC_MAX_TOKENS,
            ),
            store=PRDStore(app.DATABASE_PATH),
            monitoring=monitoring,
        )

    # --- Opening runs (synchronous validation, no network) ---

    def open_generation(
        self,
        requirements: str,
        platform: str,
        project_context: Optional[str] = None,
        owner_id: Optional[str] = None,
    ) -> GenerationRun:
        if not requirements or not requirements.strip():
            raise ValidationError("Please enter your project requirements")

        logger.info(f"Generating PRD for platform: {platform}")
        logger.debug(f"Requirements length: {len(requirements)}")

        def draft(content: str) -> PRDRecordDraft:
            return PRDRecordDraft(
                owner_id=owner_id,
                title=derive_title(requirements),
                requirements=requirements,
                platform=platform,
                content=content,
            )

        return GenerationRun(
            self,
            KIND_GENERATE,
            build_generation_message(requirements, platform, project_context),
            owner_id,
            draft,
        )

    def open_refinement(
        self,
        existing_prd: str,
        additional_requirements: str,
        platform: str,
        project_context: Optional[str] = None,
        owner_id: Optional[str] = None,
    ) -> GenerationRun:
        if not additional_requirements or not additional_requirements.strip():
            raise ValidationError("Please enter additional requirements to refine the PRD")
        if not existing_prd or not existing_prd.strip():
            raise ValidationError("There is no PRD to refine. Generate a PRD first.")

        logger.info(f"Refining PRD for platform: {platform}")

        def draft(content: str) -> PRDRecordDraft:
            return PRDRecordDraft(
                owner_id=owner_id,
                title=derive_title(additional_requirements) + ENHANCED_SUFFIX,
                requirements=existing_prd + REFINEMENT_SEPARATOR + additional_requirements,
                platform=platform,
                content=content,
            )

        return GenerationRun(
            self,
            KIND_REFINE,
            build_refinement_message(existing_prd, additional_requirements, platform, project_context),
            owner_id,
            draft,
        )

    # --- End-to-end operations ---

    async def generate(
        self,
        requirements: str,
        platform: str,
        project_context: Optional[str] = None,
        owner_id: Optional[str] = None,
        view: Optional[DraftView] = None,
    ) -> GenerationResult:
        """Generates a PRD, appending each fragment to ``view`` as it arrives."""
        run = self.open_generation(requirements, platform, project_context, owner_id)
        view = view or DraftView()
        view.clear()
        async with run:
            async for fragment in run.fragments():
                view.append(fragment)
        return run.result()

    async def refine(
        self,
        existing_prd: str,
        additional_requirements: str,
        platform: str,
        project_context: Optional[str] = None,
        owner_id: Optional[str] = None,
        view: Optional[DraftView] = None,
    ) -> GenerationResult:
        """Streams an enhanced PRD into ``view``.

        ``view`` is cleared first; if anything fails it is restored to
        ``existing_prd`` so the approved original is never lost.
        """
        run = self.open_refinement(
            existing_prd, additional_requirements, platform, project_context, owner_id
        )
        view = view or DraftView(existing_prd)
        view.clear()
        succeeded = False
        try:
            async with run:
                async for fragment in run.fragments():
                    view.append(fragment)
            succeeded = True
        finally:
            if not succeeded:
                logger.warning("PRD refinement failed, restoring the previous PRD")
                view.restore(existing_prd)
        return run.result()

    # --- History ---

    async def history(self, owner_id: str) -> List[PRDRecord]:
        if self.store is None:
            return []
        return await self.store.query(owner_id)

    async def delete(self, prd_id: str, caller: Caller) -> bool:
        """Deletes a PRD owned by ``caller`` (or any PRD for admins)."""
        if self.store is None:
            return False
        record = await self.store.get(prd_id)
        if record is None:
            return False
        if not self.rbac.can_delete_prd(caller, record.owner_id):
            audit_prd_change(caller.user_id, prd_id, "delete", "DENIED")
            raise PermissionDenied("You can only delete your own PRDs")
        deleted = await self.store.delete(prd_id)
        if deleted:
            audit_prd_change(caller.user_id, prd_id, "delete", "DELETED")
        return deleted

    async def aclose(self) -> None:
        await self.adapter.aclose()

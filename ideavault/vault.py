import asyncio
import logging

logger = logging.getLogger("IdeaVault")

from .attachments import merge_attachment, normalize_attachment
from .constants import CONTENT_COUNTER, DEFAULT_SETTINGS, PROJECT_COUNTER
from .db import IdeaVaultStore
from .errors import ConsistencyError, NotFoundError, ValidationError
from .utils import parse_iso, to_iso, utcnow, window_start

NO_IDEAS_PREVIEW = "No ideas added yet..."


def _record_id(value, what="id"):
    if isinstance(value, bool):
        raise ValidationError(f"invalid {what}: {value!r}")
    try:
        record_id = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"invalid {what}: {value!r}") from None
    if record_id < 1:
        raise ValidationError(f"invalid {what}: {value!r}")
    return record_id


def _clean_text(text):
    if text is None:
        return ""
    return str(text).strip()


def _check_idea(text, file):
    if not text and not file:
        raise ValidationError("an idea needs text or a file attachment")


def _newest_first(records):
    return sorted(records, key=lambda r: (r["created_at"], r["id"]), reverse=True)


def _preview(item):
    if item["text"]:
        return item["text"]
    if item["file"]:
        return "Image attachment" if item["file"].get("is_image") else "File attachment"
    return "Empty content"


def _is_recent(created_at, cutoff):
    dt = parse_iso(created_at)
    return dt is not None and dt > cutoff


class IdeaVault:
    """Async entry point for projects and ideas.

    Every method is one SQLite transaction run off the event loop with
    ``asyncio.to_thread``. Records come back as fresh dicts; mutate them
    freely, they are never written back implicitly.
    """

    def __init__(self, store=None, clock=None):
        self.store = store or IdeaVaultStore.get()
        self.clock = clock or utcnow

    def _now(self):
        return to_iso(self.clock())

    # ── projects ──

    async def create_project(self, name):
        return await asyncio.to_thread(self._create_project, name)

    def _create_project(self, name):
        name = _clean_text(name)
        if not name:
            raise ValidationError("project name must not be empty")
        with self.store.transaction() as tx:
            project = {
                "id": tx.next_id(PROJECT_COUNTER),
                "name": name,
                "created_at": self._now(),
            }
            tx.put("projects", project)
        logger.info("Project created: id=%d name=%r", project["id"], name)
        return project

    async def get_project(self, project_id):
        return await asyncio.to_thread(self.store.get_record, "projects", _record_id(project_id))

    async def list_projects(self):
        projects = await asyncio.to_thread(self.store.get_all, "projects")
        return _newest_first(projects)

    async def rename_project(self, project_id, new_name):
        return await asyncio.to_thread(self._rename_project, _record_id(project_id), new_name)

    def _rename_project(self, project_id, new_name):
        name = _clean_text(new_name)
        if not name:
            raise ValidationError("project name must not be empty")
        with self.store.transaction() as tx:
            project = tx.get("projects", project_id)
            if project is None:
                raise NotFoundError(f"project {project_id} not found")
            project["name"] = name
            tx.put("projects", project)
        return project

    async def delete_project(self, project_id):
        return await asyncio.to_thread(self._delete_project, _record_id(project_id))

    def _delete_project(self, project_id):
        with self.store.transaction() as tx:
            existed = tx.delete("projects", project_id)
            removed = tx.delete_by_index("content", "project_id", project_id)
            left = tx.count_by_index("content", "project_id", project_id)
            if left or tx.get("projects", project_id) is not None:
                raise ConsistencyError(
                    f"cascade delete of project {project_id} left {left} idea(s) behind"
                )
        if existed:
            logger.info("Project deleted: id=%d ideas=%d", project_id, removed)
        elif removed:
            logger.warning("Removed %d orphaned idea(s) of missing project %d", removed, project_id)
        return existed

    # ── ideas ──

    async def add_content(self, project_id, text="", file=None):
        return await asyncio.to_thread(self._add_content, _record_id(project_id, "project id"), text, file)

    def _add_content(self, project_id, text, file):
        text = _clean_text(text)
        attachment = normalize_attachment(file) if file else None
        _check_idea(text, attachment)
        with self.store.transaction() as tx:
            if tx.get("projects", project_id) is None:
                raise NotFoundError(f"project {project_id} not found")
            content = {
                "id": tx.next_id(CONTENT_COUNTER),
                "project_id": project_id,
                "text": text,
                "file": attachment,
                "created_at": self._now(),
                "updated_at": None,
            }
            tx.put("content", content)
        logger.debug("Idea %d added to project %d", content["id"], project_id)
        return content

    async def get_content(self, content_id):
        return await asyncio.to_thread(self.store.get_record, "content", _record_id(content_id))

    async def update_content(self, content_id, changes):
        return await asyncio.to_thread(self._update_content, _record_id(content_id), changes or {})

    def _update_content(self, content_id, changes):
        if not isinstance(changes, dict):
            raise ValidationError("changes must be an object")
        changes = {k: changes[k] for k in ("text", "file") if k in changes}
        with self.store.transaction() as tx:
            content = tx.get("content", content_id)
            if content is None:
                raise NotFoundError(f"idea {content_id} not found")
            if not changes:
                return content

            text, file = content["text"], content["file"]
            if "text" in changes:
                text = _clean_text(changes["text"])
            if "file" in changes:
                if not changes["file"]:
                    file = None
                elif file:
                    file = merge_attachment(file, changes["file"])
                else:
                    file = normalize_attachment(changes["file"])
            _check_idea(text, file)
            if text == content["text"] and file == content["file"]:
                return content

            content["text"], content["file"] = text, file
            content["updated_at"] = self._now()
            tx.put("content", content)
        return content

    async def delete_content(self, content_id):
        return await asyncio.to_thread(self.store.delete, "content", _record_id(content_id))

    async def list_content_for_project(self, project_id, newest_first=True):
        items = await asyncio.to_thread(
            self.store.get_by_index, "content", "project_id", _record_id(project_id, "project id")
        )
        return _newest_first(items) if newest_first else items

    # ── statistics ──

    async def total_content_count(self):
        return await asyncio.to_thread(self.store.count, "content")

    async def recently_active_project_count(self, window_days=7):
        return await asyncio.to_thread(self._recently_active_project_count, window_days)

    def _recently_active_project_count(self, window_days):
        with self.store.transaction(write=False) as tx:
            return self._count_recent(tx, window_days)

    def _count_recent(self, tx, window_days):
        if isinstance(window_days, bool) or not isinstance(window_days, (int, float)) or window_days < 0:
            raise ValidationError(f"invalid window: {window_days!r}")
        cutoff = window_start(self.clock(), window_days)
        # Full scan of both tables; only the columns the union needs.
        projects = tx.get_all("projects", fields=("id", "created_at"))
        ideas = tx.get_all("content", fields=("project_id", "created_at"))

        known = {p["id"] for p in projects}
        active = {p["id"] for p in projects if _is_recent(p["created_at"], cutoff)}
        active.update(
            c["project_id"] for c in ideas if c["project_id"] in known and _is_recent(c["created_at"], cutoff)
        )
        return len(active)

    async def project_summaries(self):
        return await asyncio.to_thread(self._project_summaries)

    def _project_summaries(self):
        summaries = []
        with self.store.transaction(write=False) as tx:
            for project in tx.get_all("projects"):
                items = tx.get_by_index("content", "project_id", project["id"])
                latest = max(items, key=lambda c: c["id"]) if items else None
                summaries.append(
                    {
                        **project,
                        "idea_count": len(items),
                        "preview": _preview(latest) if latest else NO_IDEAS_PREVIEW,
                    }
                )
        return _newest_first(summaries)

    async def statistics(self, window_days=None):
        if window_days is None:
            settings = await self.get_settings()
            window_days = settings["recent_window_days"]
        return await asyncio.to_thread(self._statistics, window_days)

    def _statistics(self, window_days):
        # One read transaction so the three numbers describe the same snapshot.
        with self.store.transaction(write=False) as tx:
            return {
                "projects": tx.count("projects"),
                "ideas": tx.count("content"),
                "recent_projects": self._count_recent(tx, window_days),
            }

    # ── settings ──

    async def get_settings(self):
        return await asyncio.to_thread(self.store.get_settings)

    async def update_settings(self, changes):
        if not isinstance(changes, dict):
            raise ValidationError("settings must be an object")
        unknown = set(changes) - set(DEFAULT_SETTINGS)
        if unknown:
            raise ValidationError(f"unknown settings: {', '.join(sorted(unknown))}")
        days = changes.get("recent_window_days", DEFAULT_SETTINGS["recent_window_days"])
        if isinstance(days, bool) or not isinstance(days, int) or days < 1:
            raise ValidationError("recent_window_days must be a positive integer")

        settings = {**(await self.get_settings()), **changes}
        await asyncio.to_thread(self.store.set_settings, settings)
        return settings

import asyncio
import json
import logging
import os

from aiohttp import web

from .attachments import IMAGE_DECODE_ERRORS, make_thumbnail_png, to_data_url
from .errors import ConsistencyError, NotFoundError, StorageError, ValidationError
from .vault import IdeaVault

logger = logging.getLogger("IdeaVault")

PREFIX = "/ideavault"


def _json_response(obj, status=200):
    return web.Response(
        status=status,
        text=json.dumps(obj, ensure_ascii=False),
        content_type="application/json",
    )


def _bad_request(msg):
    return _json_response({"error": msg}, status=400)


def _content_json(content):
    """Images travel as data URLs; text attachments as plain strings."""
    file = content.get("file")
    if not file:
        return content
    out_file = dict(file)
    if file.get("is_image"):
        out_file["content"] = to_data_url(file)
    return {**content, "file": out_file}


async def _read_json(request):
    try:
        payload = await request.json()
    except ValueError:
        raise ValidationError("request body is not valid JSON") from None
    if not isinstance(payload, dict):
        raise ValidationError("request body must be a JSON object")
    return payload


@web.middleware
async def error_middleware(request, handler):
    try:
        return await handler(request)
    except ValidationError as exc:
        return _bad_request(str(exc))
    except NotFoundError as exc:
        return _json_response({"error": str(exc)}, status=404)
    except StorageError as exc:
        logger.exception("Storage failure on %s %s", request.method, request.path)
        return _json_response({"error": "storage unavailable", "detail": str(exc)}, status=503)
    except ConsistencyError:
        logger.exception("Consistency failure on %s %s", request.method, request.path)
        return _json_response({"error": "operation rolled back"}, status=500)


def create_app(vault=None):
    vault = vault or IdeaVault()
    routes = web.RouteTableDef()

    @routes.get(f"{PREFIX}/health")
    async def health(_request):
        return _json_response({"ok": True, "db_path": vault.store.db_path})

    @routes.get(f"{PREFIX}/projects")
    async def list_projects(_request):
        items = await vault.project_summaries()
        return _json_response({"items": items, "total": len(items)})

    @routes.post(f"{PREFIX}/projects")
    async def create_project(request):
        payload = await _read_json(request)
        project = await vault.create_project(payload.get("name"))
        return _json_response(project, status=201)

    @routes.get(PREFIX + r"/projects/{project_id:\d+}")
    async def get_project(request):
        project_id = int(request.match_info["project_id"])
        project = await vault.get_project(project_id)
        if project is None:
            raise NotFoundError(f"project {project_id} not found")
        return _json_response(project)

    @routes.put(PREFIX + r"/projects/{project_id:\d+}")
    async def rename_project(request):
        payload = await _read_json(request)
        project = await vault.rename_project(int(request.match_info["project_id"]), payload.get("name"))
        return _json_response(project)

    @routes.delete(PREFIX + r"/projects/{project_id:\d+}")
    async def delete_project(request):
        deleted = await vault.delete_project(int(request.match_info["project_id"]))
        return _json_response({"deleted": deleted})

    @routes.get(PREFIX + r"/projects/{project_id:\d+}/content")
    async def list_content(request):
        items = await vault.list_content_for_project(int(request.match_info["project_id"]))
        return _json_response({"items": [_content_json(c) for c in items], "total": len(items)})

    @routes.post(PREFIX + r"/projects/{project_id:\d+}/content")
    async def add_content(request):
        payload = await _read_json(request)
        content = await vault.add_content(
            int(request.match_info["project_id"]),
            text=payload.get("text") or "",
            file=payload.get("file"),
        )
        return _json_response(_content_json(content), status=201)

    async def _existing_content(request):
        content_id = int(request.match_info["content_id"])
        content = await vault.get_content(content_id)
        if content is None:
            raise NotFoundError(f"idea {content_id} not found")
        return content

    @routes.get(PREFIX + r"/content/{content_id:\d+}")
    async def get_content(request):
        return _json_response(_content_json(await _existing_content(request)))

    @routes.put(PREFIX + r"/content/{content_id:\d+}")
    async def update_content(request):
        payload = await _read_json(request)
        content = await vault.update_content(int(request.match_info["content_id"]), payload)
        return _json_response(_content_json(content))

    @routes.delete(PREFIX + r"/content/{content_id:\d+}")
    async def delete_content(request):
        deleted = await vault.delete_content(int(request.match_info["content_id"]))
        return _json_response({"deleted": deleted})

    @routes.get(PREFIX + r"/content/{content_id:\d+}/file")
    async def download_file(request):
        file = (await _existing_content(request)).get("file")
        if not file:
            raise NotFoundError("idea has no attachment")
        body = file["content"]
        if isinstance(body, str):
            body = body.encode("utf-8")
        return web.Response(
            body=body,
            content_type=file["mime_type"],
            headers={"Content-Disposition": f'attachment; filename="{file["name"]}"'},
        )

    @routes.get(PREFIX + r"/content/{content_id:\d+}/thumbnail")
    async def get_thumbnail(request):
        file = (await _existing_content(request)).get("file")
        if not file or not file.get("is_image") or file.get("width") is None:
            raise NotFoundError("idea has no thumbnail")
        try:
            width = max(16, min(1024, int(request.query.get("width", "256"))))
        except (TypeError, ValueError):
            width = 256
        try:
            png, _w, _h = await asyncio.to_thread(make_thumbnail_png, file["content"], width)
        except IMAGE_DECODE_ERRORS:
            logger.warning("Stored image of idea %s cannot be rendered", request.match_info["content_id"])
            raise NotFoundError("idea has no usable thumbnail") from None
        return web.Response(
            body=png,
            content_type="image/png",
            headers={"Cache-Control": "public, max-age=3600"},
        )

    @routes.get(f"{PREFIX}/stats")
    async def stats(request):
        window = request.query.get("window_days")
        if window is not None:
            try:
                window = int(window)
            except ValueError:
                raise ValidationError("window_days must be an integer") from None
        return _json_response(await vault.statistics(window))

    @routes.get(f"{PREFIX}/settings")
    async def get_settings(_request):
        return _json_response(await vault.get_settings())

    @routes.put(f"{PREFIX}/settings")
    async def update_settings(request):
        payload = await _read_json(request)
        return _json_response(await vault.update_settings(payload))

    app = web.Application(middlewares=[error_middleware])
    app.add_routes(routes)
    return app


def serve(host=None, port=None):
    logging.basicConfig(
        level=os.environ.get("IDEAVAULT_LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )
    host = host or os.environ.get("IDEAVAULT_HOST", "127.0.0.1")
    port = int(port or os.environ.get("IDEAVAULT_PORT", "8765"))
    logger.info("Serving on http://%s:%d%s", host, port, PREFIX)
    web.run_app(create_app(), host=host, port=port, print=None)

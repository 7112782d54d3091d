# routekeeper/api.py
import logging
from datetime import datetime, timezone

from aiohttp import web
from prometheus_client import CONTENT_TYPE_LATEST

from .health import liveness_info, render_metrics

logger = logging.getLogger(__name__)


class RouteApi:
    """
    HTTP surface over the core. Holds references to the cache, readiness
    controller and metrics registry; owns no state of its own.
    """
    def __init__(self, cache, readiness, registry, staleness_threshold: float, started_at: float):
        self.cache = cache
        self.readiness = readiness
        self.registry = registry
        self.staleness_threshold = staleness_threshold
        self.started_at = started_at

    def build_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get('/api/routes', self.list_routes)
        app.router.add_get('/api/routes/{source}/{target}', self.get_route)
        app.router.add_get('/health', self.health)
        app.router.add_get('/healthz', self.healthz)
        app.router.add_get('/readyz', self.readyz)
        app.router.add_get('/metrics', self.metrics)
        return app

    async def list_routes(self, request):
        snap = self.cache.current()
        if snap is None:
            return web.json_response({"error": "no routes published yet"}, status=503)
        return web.json_response({
            "generation": snap.generation,
            "published_at": snap.published_at,
            "stale": snap.age() > self.staleness_threshold,
            "partial": snap.partial,
            "count": len(snap.routes),
            "routes": [snap.routes[k].to_dict() for k in sorted(snap.routes)],
        })

    async def get_route(self, request):
        source = request.match_info['source']
        target = request.match_info['target']
        snap = self.cache.current()
        route = snap.route(source, target) if snap is not None else None
        if route is None:
            return web.json_response({"error": f"no route {source} -> {target}"}, status=404)
        body = route.to_dict()
        body["stale"] = snap.age() > self.staleness_threshold
        return web.json_response(body)

    async def health(self, request):
        return web.json_response({"status": "ok", "timestamp": datetime.now(timezone.utc).isoformat()})

    async def healthz(self, request):
        # Liveness never consults dependencies
        try:
            return web.json_response(liveness_info(self.started_at))
        except Exception as e:
            logger.exception("Liveness handler failed")
            return web.json_response({"success": False, "status": "unhealthy", "error": str(e)}, status=503)

    async def readyz(self, request):
        try:
            state = await self.readiness.evaluate()
            body = self.readiness.report(state=state)
            return web.json_response(body, status=200 if state.ready else 503)
        except Exception as e:
            logger.exception("Readiness handler failed")
            return web.json_response({"success": False, "status": "not_ready", "error": str(e)}, status=503)

    async def metrics(self, request):
        data = render_metrics(self.registry)
        return web.Response(body=data, headers={"Content-Type": CONTENT_TYPE_LATEST})

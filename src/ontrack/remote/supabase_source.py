# src/ontrack/remote/supabase_source.py

from __future__ import annotations

"""
Remote solution source backed by Supabase (PostgREST over HTTP).

Reads, per user:
- current_model:  which solver model is current
- model:          recent models (fallback when the current one has no solutions yet)
- task_solution:  solved placements {task_id, solution_json}
- task:           task metadata (names)

Any HTTP/JSON problem is raised as RemoteSourceError; the reconciler turns it
into a failed SyncResult.
"""

import logging
from typing import Any

import httpx

from ..tasks.errors import RemoteSourceError
from ..tasks.snapshot import RemoteSnapshot

logger = logging.getLogger(__name__)

DEFAULT_FALLBACK_MODELS = 5


def build_timeout(connect_s: float = 10.0, read_s: float = 30.0) -> httpx.Timeout:
    return httpx.Timeout(connect=connect_s, read=read_s, write=10.0, pool=connect_s)


def _in_list(values: list[str]) -> str:
    quoted = ",".join('"' + v.replace('"', '\\"') + '"' for v in values)
    return f"in.({quoted})"


class SupabaseSolutionSource:
    def __init__(
            self,
            base_url: str,
            api_key: str,
            user_id: str,
            *,
            access_token: str | None = None,
            fallback_models: int = DEFAULT_FALLBACK_MODELS,
            timeout: float = 30.0,
            transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if not base_url:
            raise ValueError("Supabase URL is not configured")
        if not user_id:
            raise ValueError("Supabase user id is not configured")

        self.user_id = user_id
        self.fallback_models = max(0, int(fallback_models))
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/") + "/rest/v1",
            headers={
                "apikey": api_key,
                "Authorization": f"Bearer {access_token or api_key}",
                "Accept": "application/json",
            },
            timeout=build_timeout(read_s=timeout),
            transport=transport,
        )

    @classmethod
    def from_settings(cls, settings, **kwargs: Any) -> SupabaseSolutionSource:
        return cls(
            settings.supabase_url,
            settings.supabase_api_key,
            settings.supabase_user_id,
            access_token=settings.supabase_access_token or None,
            fallback_models=settings.fallback_models,
            timeout=settings.http_timeout,
            **kwargs,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _select(self, table: str, params: dict[str, str]) -> list[dict[str, Any]]:
        try:
            resp = await self._client.get(f"/{table}", params=params)
            resp.raise_for_status()
            data = resp.json()
        except httpx.HTTPStatusError as e:
            raise RemoteSourceError(f"{table}: HTTP {e.response.status_code}") from e
        except httpx.HTTPError as e:
            raise RemoteSourceError(f"{table}: {e.__class__.__name__}: {e}") from e
        except ValueError as e:
            raise RemoteSourceError(f"{table}: invalid JSON response") from e

        if not isinstance(data, list):
            raise RemoteSourceError(f"{table}: expected a JSON array")
        return [row for row in data if isinstance(row, dict)]

    async def current_model_id(self) -> str:
        rows = await self._select(
            "current_model",
            {"select": "model_id", "user_id": f"eq.{self.user_id}", "limit": "1"},
        )
        if not rows or not rows[0].get("model_id"):
            raise RemoteSourceError("No current model")
        return str(rows[0]["model_id"])

    async def has_solutions(self, model_id: str) -> bool:
        rows = await self._select(
            "task_solution",
            {"select": "task_id", "model_id": f"eq.{model_id}", "limit": "1"},
        )
        return bool(rows)

    async def recent_model_ids(self, limit: int) -> list[str]:
        rows = await self._select(
            "model",
            {
                "select": "model_id,created_at",
                "user_id": f"eq.{self.user_id}",
                "order": "created_at.desc",
                "limit": str(limit),
            },
        )
        return [str(r["model_id"]) for r in rows if r.get("model_id")]

    async def resolve_model_id(self) -> str:
        """The current model, or the newest recent model that already has solutions."""
        model_id = await self.current_model_id()
        if self.fallback_models == 0 or await self.has_solutions(model_id):
            return model_id

        logger.info("Current model %s has no solutions, checking recent models", model_id)
        for candidate in await self.recent_model_ids(self.fallback_models):
            if candidate != model_id and await self.has_solutions(candidate):
                logger.info("Using solutions from model %s", candidate)
                return candidate
        return model_id

    async def fetch_snapshot(self) -> RemoteSnapshot:
        model_id = await self.resolve_model_id()

        solutions = await self._select(
            "task_solution",
            {"select": "task_id,solution_json", "model_id": f"eq.{model_id}"},
        )
        if not solutions:
            logger.info("No task solutions for model %s (solver may still be processing)", model_id)
            return RemoteSnapshot(model_id=model_id, solutions=[], names={})

        task_ids = sorted({str(s["task_id"]) for s in solutions if s.get("task_id")})
        names: dict[str, str] = {}
        if task_ids:
            rows = await self._select("task", {"select": "task_id,name", "task_id": _in_list(task_ids)})
            names = {str(r["task_id"]): str(r.get("name") or "") for r in rows if r.get("task_id")}

        logger.info("Fetched %d task solutions for model %s", len(solutions), model_id)
        return RemoteSnapshot(model_id=model_id, solutions=solutions, names=names)

import requests
from typing import Optional


class WorkoutClient:
    """Simple REST client for the workout API."""

    def __init__(
        self, base_url: str = "http://localhost:8000", api_key: Optional[str] = None
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.headers = {"X-API-Key": api_key} if api_key else {}

    def _request(self, method: str, path: str, **kwargs):
        resp = requests.request(
            method, f"{self.base_url}{path}", headers=self.headers, timeout=10, **kwargs
        )
        resp.raise_for_status()
        return resp.json()

    def list_templates(self) -> list:
        return self._request("GET", "/templates")

    def create_template(
        self, name: str, sets: int, target_total: int, rest_sec: int
    ) -> dict:
        return self._request(
            "POST",
            "/templates",
            params={
                "name": name,
                "sets": sets,
                "target_total": target_total,
                "rest_sec": rest_sec,
            },
        )

    def start_session(
        self,
        template_id: str,
        sets: Optional[int] = None,
        rest_sec: Optional[int] = None,
    ) -> dict:
        params = {"template_id": template_id}
        if sets is not None:
            params["sets"] = sets
        if rest_sec is not None:
            params["rest_sec"] = rest_sec
        session = self._request("POST", "/sessions", params=params)
        self._request("POST", "/workout/attach", params={"session_id": session["id"]})
        return session

    def record_set(self, reps: int) -> dict:
        return self._request("POST", "/workout/sets", params={"reps": reps})

    def skip_rest(self) -> dict:
        return self._request("POST", "/workout/rest/skip")

    def undo(self) -> dict:
        return self._request("POST", "/workout/undo")

    def finish(self) -> dict:
        return self._request("POST", "/workout/finish")

    def list_sessions(self, limit: Optional[int] = None) -> list:
        params = {"limit": limit} if limit is not None else None
        return self._request("GET", "/sessions", params=params)

    def weekly_stats(self, weeks: Optional[int] = None) -> list:
        params = {"weeks": weeks} if weeks is not None else None
        return self._request("GET", "/stats/weekly", params=params)

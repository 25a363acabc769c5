"""In-process stand-in for the remote listing API, used by the sync tests."""

import httpx


def make_record(n: int, **overrides) -> dict:
    """A remote listing record shaped like the auction API's payload."""
    record = {
        "id": n,
        "manufacturer": {"id": 1, "name": "Toyota"},
        "model": {"id": 2, "name": "Corolla"},
        "year": 2018,
        "vin": f"JTDBR32E{n:09d}",
        "fuel": {"name": "Petrol"},
        "transmission": {"name": "Automatic"},
        "color": {"name": "White"},
        "body_type": {"name": "Sedan"},
        "lots": [
            {
                "lot": f"L{n}",
                "buy_now": 10_000 + n,
                "odometer": {"km": 1_000 * n},
                "images": {"normal": [f"https://img.remote.test/{n}/1.jpg"]},
                "status": {"name": "active"},
            }
        ],
    }
    record.update(overrides)
    return record


class FakeRemoteAPI:
    """In-process stand-in for the remote listing API.

    ``pages`` maps page number -> records. ``failures`` maps page number to a
    list of status codes returned (in order) before the page succeeds.
    """

    def __init__(
        self,
        pages: dict[int, list[dict]] | None = None,
        total: int | None = None,
        last_page: int | None = None,
        per_page: int = 25,
        include_meta: bool = True,
        failures: dict[int, list[int]] | None = None,
        headers: dict[int, dict[str, str]] | None = None,
        api_key: str = "test-key",
    ):
        self.pages = pages or {}
        self.total = total
        self.last_page = last_page
        self.per_page = per_page
        self.include_meta = include_meta
        self.failures = {page: list(codes) for page, codes in (failures or {}).items()}
        self.headers = headers or {}
        self.api_key = api_key
        self.requests: list[httpx.Request] = []

    @property
    def requested_pages(self) -> list[int]:
        return [int(r.url.params["page"]) for r in self.requests if "page" in r.url.params]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.headers.get("x-api-key") != self.api_key:
            return httpx.Response(401, json={"message": "Unauthenticated"})

        if "page" not in request.url.params:
            return self._scroll(request)

        page = int(request.url.params["page"])
        pending = self.failures.get(page)
        if pending:
            code = pending.pop(0)
            return httpx.Response(code, headers=self.headers.get(page, {}), json={"message": "error"})

        body: dict = {"data": self.pages.get(page, [])}
        if self.include_meta:
            total = self.total if self.total is not None else sum(len(r) for r in self.pages.values())
            body["meta"] = {
                "current_page": page,
                "per_page": self.per_page,
                "total": total,
                "last_page": self.last_page or max(self.pages or {1: None}),
            }
        return httpx.Response(200, json=body)

    def _scroll(self, request: httpx.Request) -> httpx.Response:
        """Scroll sessions walk ``pages`` in order; ids look like "scroll-<batch>"."""
        scroll_id = request.url.params.get("scroll_id")
        batch = int(scroll_id.split("-")[1]) if scroll_id else 1
        records = self.pages.get(batch, [])
        next_id = f"scroll-{batch + 1}" if records else None
        return httpx.Response(200, json={"data": records, "scroll_id": next_id})


class SleepRecorder:
    """Async sleep replacement that records requested delays."""

    def __init__(self):
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)

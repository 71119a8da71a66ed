"""内置工具。

- web_search: 通过 Tavily 搜索接口检索网页，返回有限条结果。
- get_current_weather: 演示用天气工具，返回固定格式的文本。
"""

import json
from typing import Any, Dict, List, Optional

import httpx

from chat_core.config.settings import settings as default_settings
from chat_core.domain.exceptions import CapabilityError
from .definitions import ToolDef, ToolParam
from .executor import Capability

MAX_SEARCH_RESULTS = 10

WEB_SEARCH_DEF = ToolDef(
    name="web_search",
    description="Search the web for up-to-date information. Returns titles, URLs and snippets.",
    params={
        "query": ToolParam(
            name="query",
            description="Search query",
            required=True,
            schema={"type": "string", "minLength": 1},
        ),
        "max_results": ToolParam(
            name="max_results",
            description=f"Maximum number of results (1-{MAX_SEARCH_RESULTS}, default 5)",
            required=False,
            schema={"type": "integer", "minimum": 1, "maximum": MAX_SEARCH_RESULTS},
        ),
    },
)

WEATHER_DEF = ToolDef(
    name="get_current_weather",
    description="Get the current weather in a given location",
    params={
        "location": ToolParam(
            name="location",
            description="The city and state, e.g. San Francisco, CA",
            required=True,
            schema={"type": "string"},
        ),
        "unit": ToolParam(
            name="unit",
            description="Temperature unit",
            required=False,
            schema={"type": "string", "enum": ["celsius", "fahrenheit"]},
        ),
    },
)


def make_web_search(cfg=None) -> Capability:
    cfg = cfg or default_settings

    async def _run(args: Dict[str, Any]) -> str:
        api_key = getattr(cfg, "tavily_api_key", None)
        if not api_key:
            raise CapabilityError("TAVILY_API_KEY is not set", code="MISSING_API_KEY", tool_name="web_search")
        limit = max(1, min(int(args.get("max_results") or 5), MAX_SEARCH_RESULTS))
        payload = {
            "api_key": api_key,
            "query": str(args["query"]),
            "max_results": limit,
            "search_depth": "basic",
            "include_answer": True,
        }
        base = getattr(cfg, "tavily_base_url", None) or "https://api.tavily.com"
        try:
            async with httpx.AsyncClient(timeout=cfg.http_timeout, trust_env=False) as client:
                resp = await client.post(f"{base.rstrip('/')}/search", json=payload)
        except httpx.RequestError as e:
            raise CapabilityError(f"search request failed: {e}", tool_name="web_search")
        if resp.status_code != 200:
            raise CapabilityError(f"search API error {resp.status_code}: {resp.text[:200]}", tool_name="web_search")
        try:
            data = resp.json()
        except ValueError:
            raise CapabilityError("invalid JSON from search API", tool_name="web_search")
        results: List[Dict[str, Optional[str]]] = [
            {
                "title": r.get("title"),
                "url": r.get("url"),
                "content": r.get("content") or r.get("snippet"),
            }
            for r in (data.get("results") or [])[:limit]
        ]
        return json.dumps({"answer": data.get("answer"), "results": results}, ensure_ascii=False)

    return Capability(definition=WEB_SEARCH_DEF, func=_run)


def _current_weather(args: Dict[str, Any]) -> str:
    location = str(args["location"])
    unit = args.get("unit") or "fahrenheit"
    degrees = 72 if unit == "fahrenheit" else 22
    return json.dumps(
        {"location": location, "temperature": degrees, "unit": unit, "forecast": "sunny"},
        ensure_ascii=False,
    )


def make_weather() -> Capability:
    return Capability(definition=WEATHER_DEF, func=_current_weather)


def default_capabilities(cfg=None) -> List[Capability]:
    return [make_web_search(cfg), make_weather()]

"""End-to-end smoke check against a running gateway."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import httpx

DEFAULT_BASE_URL = "http://127.0.0.1:8000"
DEFAULT_PROMPT = "A watercolor painting of a small red boat on a quiet lake at sunrise."


@dataclass
class SmokeTarget:
    base_url: str
    access_key: str
    model: Optional[str] = None
    prompt: str = DEFAULT_PROMPT

    def headers(self) -> dict:
        return {
            "Authorization": f"Bearer {self.access_key}",
            "Content-Type": "application/json",
        }

    def url(self, path: str) -> str:
        return f"{self.base_url.rstrip('/')}{path}"


def _report(method: str, url: str, resp: httpx.Response) -> None:
    print(f"[{method}] {url} -> {resp.status_code}")
    print(resp.text[:1200])
    print("-" * 80)


def list_models(client: httpx.Client, target: SmokeTarget) -> bool:
    url = target.url("/v1/models")
    resp = client.get(url, headers=target.headers(), timeout=30)
    _report("GET", url, resp)
    return resp.status_code == 200 and bool(resp.json().get("data"))


def chat_completion(client: httpx.Client, target: SmokeTarget) -> bool:
    url = target.url("/v1/chat/completions")
    payload = {
        "messages": [{"role": "user", "content": f"{target.prompt} size:16:9"}],
        "stream": False,
    }
    if target.model:
        payload["model"] = target.model
    resp = client.post(url, headers=target.headers(), json=payload, timeout=180)
    _report("POST", url, resp)
    return resp.status_code == 200


def image_generation(client: httpx.Client, target: SmokeTarget) -> bool:
    url = target.url("/v1/images/generations")
    payload = {"prompt": target.prompt, "n": 1, "size": "1024x1024"}
    if target.model:
        payload["model"] = target.model
    resp = client.post(url, headers=target.headers(), json=payload, timeout=180)
    _report("POST", url, resp)

    if resp.status_code != 200:
        return False
    data = resp.json().get("data") or []
    if data:
        print("Image URL:", data[0].get("url"))
    return bool(data)


def run_smoke(target: SmokeTarget, client: Optional[httpx.Client] = None) -> bool:
    owns_client = client is None
    client = client or httpx.Client()
    try:
        print("Gateway smoke check started")
        print(f"BASE_URL={target.base_url}")
        print(f"MODEL={target.model or '(gateway default)'}")
        print("-" * 80)

        results = [
            list_models(client, target),
            chat_completion(client, target),
            image_generation(client, target),
        ]
        print("Gateway smoke check finished")
        return all(results)
    finally:
        if owns_client:
            client.close()

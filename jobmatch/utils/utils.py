import json
import os
from typing import Any, Dict, List, Optional

import requests
from dotenv import load_dotenv

from jobmatch.utils.exceptions import ExternalServiceError

load_dotenv()

OLLAMA = os.getenv("OLLAMA_BASE_URL", "http://localhost:11434")
LLM_MODEL = os.getenv("LLM_MODEL", "llama3.1:8b")
EMBED_MODEL = os.getenv("EMBED_MODEL", "nomic-embed-text:latest")


def _post(path: str, payload: Dict[str, Any], base_url: Optional[str], timeout: float) -> Dict[str, Any]:
    url = f"{base_url or OLLAMA}{path}"
    try:
        resp = requests.post(url, json=payload, timeout=timeout)
        resp.raise_for_status()
        return resp.json()
    except requests.HTTPError as e:
        raise ExternalServiceError(
            f"Ollama returned an error for {path}: {e}",
            service_name="ollama",
            status_code=e.response.status_code if e.response is not None else None,
            cause=e,
        ) from e
    except (requests.RequestException, ValueError) as e:
        raise ExternalServiceError(f"Ollama request to {path} failed: {e}", service_name="ollama", cause=e) from e


def ollama_generate(
    prompt: str,
    model: str = None,
    temperature: float = 0.2,
    base_url: str = None,
    timeout: float = 120,
    json_mode: bool = False,
) -> str:
    payload = {
        "model": model or LLM_MODEL,
        "prompt": prompt,
        "options": {"temperature": temperature},
        "stream": False,
    }
    if json_mode:
        payload["format"] = "json"
    return _post("/api/generate", payload, base_url, timeout).get("response", "") or ""


def ollama_embed(text: str, model: str = None, base_url: str = None, timeout: float = 30) -> List[float]:
    data = _post("/api/embeddings", {"model": model or EMBED_MODEL, "prompt": text}, base_url, timeout)
    return [float(x) for x in data.get("embedding") or []]


def safe_json(s: str, fallback):
    """Parse the first JSON object or array embedded in model output."""
    if not s:
        return fallback
    starts = [i for i in (s.find("{"), s.find("[")) if i >= 0]
    if not starts:
        return fallback
    start = min(starts)
    end = s.rfind("}" if s[start] == "{" else "]")
    if end < start:
        return fallback
    try:
        return json.loads(s[start:end + 1])
    except json.JSONDecodeError:
        return fallback

"""Generative backends: ``complete(messages) -> str`` over a chat message list.

Failures surface as CapabilityTimeout / ApiError / ConfigError so callers
can turn them into backoff instead of crashing the cycle.
"""

import os
import base64
import logging
import tempfile
import subprocess
import shutil
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeout
from typing import Any, Dict, List, Optional, Tuple

import requests

from awctx.config import LLMConfig
from awctx.errors import ApiError, CapabilityTimeout, ConfigError
from awctx.prompt import clean_response

LOG = logging.getLogger("aw-context-worker")

# Try to import llama_cpp
try:
    from llama_cpp import Llama
    from llama_cpp.llama_chat_format import Qwen25VLChatHandler

    LLAMA_CPP_AVAILABLE = True
except ImportError:
    LLAMA_CPP_AVAILABLE = False
    LOG.debug("llama-cpp-python not available, local Python backend disabled")


class OpenAIChatBackend:
    """OpenAI-compatible ``/chat/completions`` endpoint over HTTP."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        model: str,
        timeout: float = 30.0,
        max_tokens: int = 512,
        temperature: float = 0.8,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = (base_url or "").rstrip("/")
        self.api_key = api_key
        self.model = model
        self.timeout = timeout
        self.max_tokens = max_tokens
        self.temperature = temperature
        self.session = session or requests.Session()

    def is_configured(self) -> bool:
        return bool(self.api_key and self.base_url and self.model)

    def complete(self, messages: List[Dict[str, Any]]) -> str:
        if not self.is_configured():
            raise ConfigError("LLM API not configured")
        try:
            r = self.session.post(
                f"{self.base_url}/chat/completions",
                headers={
                    "Content-Type": "application/json",
                    "Authorization": f"Bearer {self.api_key}",
                },
                json={
                    "model": self.model,
                    "messages": messages,
                    "max_tokens": self.max_tokens,
                    "temperature": self.temperature,
                },
                timeout=self.timeout,
            )
        except requests.Timeout:
            raise CapabilityTimeout(f"LLM request timeout ({self.timeout:.0f}s)")
        except requests.RequestException as e:
            raise ApiError(f"LLM request failed: {e}")

        if not r.ok:
            raise ApiError(f"API error {r.status_code}: {r.text[:200]}", status=r.status_code)
        try:
            content = r.json()["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError):
            raise ApiError("Empty API response", status=r.status_code)
        if not isinstance(content, str) or not content.strip():
            raise ApiError("Empty API response", status=r.status_code)
        return clean_response(content.strip())


class LlamaCppBackend:
    """Qwen2.5-VL inference using llama-cpp-python library.

    Inference runs on a single worker thread so ``complete`` can give up
    after ``timeout`` seconds. An abandoned call keeps the worker busy and
    later calls queue behind it.
    """

    def __init__(
        self,
        model_path: str,
        mmproj_path: str,
        n_ctx: int = 4096,
        n_gpu_layers: int = -1,
        temp: float = 0.2,
        max_tokens: int = 256,
        threads: int = 0,
        timeout: float = 30.0,
        verbose: bool = False,
        llm=None,
    ):
        self.model_path = model_path
        self.mmproj_path = mmproj_path
        self.temp = temp
        self.max_tokens = max_tokens
        self.timeout = timeout
        self._worker = ThreadPoolExecutor(max_workers=1, thread_name_prefix="llama")

        if llm is not None:
            self.llm = llm
            return
        if not LLAMA_CPP_AVAILABLE:
            raise ConfigError("llama-cpp-python not available")

        # Initialize chat handler with the mmproj (CLIP) model
        chat_handler = Qwen25VLChatHandler(clip_model_path=mmproj_path, verbose=verbose)

        self.llm = Llama(
            model_path=model_path,
            chat_handler=chat_handler,
            n_ctx=n_ctx,
            n_gpu_layers=n_gpu_layers,
            n_threads=threads or None,
            logits_all=False,
            verbose=verbose,
        )

    def complete(self, messages: List[Dict[str, Any]]) -> str:
        fut = self._worker.submit(
            self.llm.create_chat_completion,
            messages=messages,
            temperature=self.temp,
            max_tokens=self.max_tokens,
        )
        try:
            out = fut.result(timeout=self.timeout)
            txt = out["choices"][0]["message"]["content"]
        except FuturesTimeout:
            raise CapabilityTimeout(f"Local inference timeout ({self.timeout:.0f}s)")
        except (KeyError, IndexError, TypeError, ValueError, RuntimeError) as e:
            raise ApiError(f"Local inference failed: {e!r}")
        if not isinstance(txt, str) or not txt.strip():
            raise ApiError("Empty model output")
        return clean_response(txt.strip())



def flatten_messages(messages: List[Dict[str, Any]]) -> Tuple[str, List[str]]:
    """Render a message list as one prompt; returns (prompt, data-url images)."""
    lines, images = [], []
    for msg in messages:
        content = msg.get("content")
        role = msg.get("role", "user")
        if isinstance(content, str):
            texts = [content]
        else:
            texts = []
            for part in content or []:
                if part.get("type") == "text":
                    texts.append(part.get("text", ""))
                elif part.get("type") == "image_url":
                    images.append(part.get("image_url", {}).get("url", ""))
        text = "\n".join(t for t in texts if t)
        if role == "system":
            lines.append(text)
        else:
            lines.append(f"{role.title()}: {text}")
    return "\n\n".join(lines), images


def _write_data_url(url: str, directory: str) -> Optional[str]:
    if not url.startswith("data:") or "," not in url:
        return url[len("file://"):] if url.startswith("file://") else None
    header, payload = url.split(",", 1)
    ext = ".png" if "png" in header else ".jpg"
    path = os.path.join(directory, f"image{ext}")
    with open(path, "wb") as f:
        f.write(base64.b64decode(payload))
    return path


class LlamaCliBackend:
    """Qwen2.5-VL inference using llama-mtmd-cli (3x faster)."""

    def __init__(
        self,
        model_path: str,
        mmproj_path: str,
        temp: float = 0.2,
        max_tokens: int = 256,
        timeout: float = 30.0,
        cli_path: Optional[str] = None,
    ):
        self.model_path = model_path
        self.mmproj_path = mmproj_path
        self.temp = temp
        self.max_tokens = max_tokens
        self.timeout = timeout

        # Find llama-mtmd-cli binary
        if cli_path and os.path.exists(cli_path):
            self.cli_path = cli_path
        else:
            self.cli_path = shutil.which("llama-mtmd-cli")
            if not self.cli_path:
                raise ConfigError(
                    "llama-mtmd-cli not found in PATH. Install llama.cpp CLI tools or set llm.cli_path"
                )
        LOG.info("Using CLI: %s", self.cli_path)

    def complete(self, messages: List[Dict[str, Any]]) -> str:
        prompt, images = flatten_messages(messages)
        with tempfile.TemporaryDirectory(prefix="awctx-") as tmp:
            cmd = [
                self.cli_path,
                "-m",
                self.model_path,
                "--temp",
                str(self.temp),
                "-n",
                str(self.max_tokens),
                "-p",
                prompt,
            ]
            image_path = _write_data_url(images[0], tmp) if images else None
            if image_path:
                cmd[3:3] = ["--mmproj", self.mmproj_path, "--image", image_path]

            try:
                result = subprocess.run(
                    cmd,
                    capture_output=True,
                    text=True,
                    timeout=self.timeout,
                )
            except subprocess.TimeoutExpired:
                raise CapabilityTimeout(f"CLI timeout after {self.timeout:.0f}s")
            except OSError as e:
                raise ApiError(f"CLI invocation failed: {e!r}")

        if result.returncode != 0:
            raise ApiError(
                f"CLI failed with code {result.returncode}: {result.stderr[:200]}",
                status=result.returncode,
            )
        LOG.debug("CLI output: %s", result.stdout[:500])
        out = clean_response(result.stdout.strip())
        if not out:
            raise ApiError("Empty CLI output")
        return out


def build_backend(cfg: LLMConfig):
    """Create the generative backend named by ``cfg.backend``."""
    backend = cfg.backend.lower()
    if backend == "openai":
        return OpenAIChatBackend(
            base_url=cfg.base_url,
            api_key=cfg.api_key,
            model=cfg.model,
            timeout=cfg.timeout_s,
            max_tokens=cfg.max_tokens,
            temperature=cfg.temperature,
        )
    if backend == "llama":
        return LlamaCppBackend(
            model_path=cfg.model_path,
            mmproj_path=cfg.mmproj_path,
            n_ctx=cfg.n_ctx,
            n_gpu_layers=cfg.n_gpu_layers,
            temp=cfg.temperature,
            max_tokens=cfg.max_tokens,
            timeout=cfg.timeout_s,
        )
    if backend in ("llama-cli", "cli"):
        return LlamaCliBackend(
            model_path=cfg.model_path,
            mmproj_path=cfg.mmproj_path,
            temp=cfg.temperature,
            max_tokens=cfg.max_tokens,
            timeout=cfg.timeout_s,
            cli_path=cfg.cli_path or None,
        )
    raise ConfigError(f"Unknown LLM backend: {cfg.backend}")

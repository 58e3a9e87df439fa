"""OpenAI-compatible chat completions client for scoring changes."""

import asyncio
import json
import logging
import re

import httpx

from site_monitor.config import AIConfig
from site_monitor.core import ContentDiff, OracleError, OracleOptions, OracleVerdict, ScoringOracle

logger = logging.getLogger(__name__)


class OpenAICompatibleOracle(ScoringOracle):
    """Scores diffs with any OpenAI-compatible ``/chat/completions`` endpoint."""

    def __init__(self, config: AIConfig) -> None:
        self.config = config
        self.max_retries = config.max_retries
        self.initial_retry_delay = config.initial_retry_delay
        self.timeout = config.timeout_seconds
        self.max_diff_chars = config.max_diff_chars

    async def score(self, diff: ContentDiff, options: OracleOptions) -> OracleVerdict:
        """Score a diff, raising OracleError on any failure."""
        if not options.api_key:
            raise OracleError("No API key configured for AI analysis")

        prompt = self._build_prompt(diff)

        try:
            response = await self._call_api(prompt=prompt, options=options)
        except httpx.HTTPError as e:
            raise OracleError(f"Scoring request failed: {e}") from e

        json_text = self._extract_json(response)

        try:
            result = json.loads(json_text)
            score = float(result["score"])
            reasoning = str(result.get("reasoning") or result.get("reason") or "")
        except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
            logger.warning("Oracle returned invalid JSON: %s", response[:250])
            raise OracleError(f"Failed to parse response: {str(e)[:100]}") from e

        return OracleVerdict(
            score=min(max(score, 0.0), 100.0),
            reasoning=reasoning,
            model=options.model,
        )

    def _build_prompt(self, diff: ContentDiff) -> str:
        diff_text = diff.text
        if len(diff_text) > self.max_diff_chars:
            diff_text = diff_text[: self.max_diff_chars] + "\n... (diff truncated)"

        return (
            f"Lines added: {diff.lines_added}, lines removed: {diff.lines_removed}\n\n"
            f"Diff:\n```diff\n{diff_text}\n```"
        )

    async def _call_api(self, prompt: str, options: OracleOptions) -> str:
        """Call chat completions with retry logic."""
        url = f"{options.base_url.rstrip('/')}/chat/completions"
        last_exception: Exception | None = None

        for attempt in range(self.max_retries):
            try:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.post(
                        url,
                        headers={
                            "Authorization": f"Bearer {options.api_key}",
                            "content-type": "application/json",
                        },
                        json={
                            "model": options.model,
                            "temperature": 0,
                            "messages": [
                                {"role": "system", "content": options.system_prompt},
                                {"role": "user", "content": prompt},
                            ],
                            "response_format": {"type": "json_object"},
                        },
                    )

                    if response.status_code == 200:
                        data = response.json()
                        return data["choices"][0]["message"]["content"]

                    # Rate limit - retry with backoff
                    if response.status_code == 429:
                        retry_after = self._get_retry_delay(response, attempt)
                        logger.info(
                            "Rate limit hit, retrying after %.1fs (attempt %d/%d)",
                            retry_after, attempt + 1, self.max_retries,
                        )
                        await asyncio.sleep(retry_after)
                        continue

                    # Server errors - retry with backoff
                    if response.status_code >= 500:
                        retry_delay = self.initial_retry_delay * (2 ** attempt)
                        logger.info("Server error %d, retrying after %.1fs", response.status_code, retry_delay)
                        await asyncio.sleep(retry_delay)
                        continue

                    # Auth and other client errors are not retried
                    raise OracleError(
                        f"Scoring API error {response.status_code}: {response.text[:200]}"
                    )

            except httpx.RequestError as e:
                last_exception = e
                if attempt < self.max_retries - 1:
                    retry_delay = self.initial_retry_delay * (2 ** attempt)
                    logger.info("Network error, retrying after %.1fs", retry_delay)
                    await asyncio.sleep(retry_delay)
                    continue
                raise
            except (KeyError, IndexError, ValueError) as e:
                raise OracleError(f"Unexpected response shape: {e}") from e

        if last_exception:
            raise last_exception
        raise OracleError(f"Scoring failed after {self.max_retries} attempts")

    def _get_retry_delay(self, response: httpx.Response, attempt: int) -> float:
        """Calculate retry delay from response headers or use exponential backoff."""
        retry_after = response.headers.get("retry-after")
        if retry_after:
            try:
                return float(retry_after)
            except ValueError:
                pass

        return self.initial_retry_delay * (2 ** attempt)

    def _fix_json(self, text: str) -> str:
        """Try to fix common JSON issues."""
        # Remove trailing commas before } or ]
        return re.sub(r',(\s*[}\]])', r'\1', text)

    def _extract_json(self, text: str) -> str:
        """Extract JSON from markdown code block or raw text."""
        code_block_match = re.search(r'```(?:json)?\s*\n(.*?)\n```', text, re.DOTALL)
        if code_block_match:
            return self._fix_json(code_block_match.group(1).strip())

        # Prefer an object carrying the required score field
        json_with_fields = re.search(r'\{[^{}]*"score"\s*:[^{}]*\}', text, re.DOTALL)
        if json_with_fields:
            candidate = self._fix_json(json_with_fields.group(0))
            try:
                json.loads(candidate)
                return candidate
            except json.JSONDecodeError:
                pass

        json_object_match = re.search(r'\{[^{}]*(?:\{[^{}]*\}[^{}]*)*\}', text, re.DOTALL)
        if json_object_match:
            candidate = self._fix_json(json_object_match.group(0))
            try:
                json.loads(candidate)
                return candidate
            except json.JSONDecodeError:
                pass

        return self._fix_json(text.strip())

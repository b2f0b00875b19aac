"""Refresh the published display set from a random sample of IIIF manifests.

One run draws `number_of_images` distinct manifest URLs from the pool, fetches
and normalizes each manifest independently, picks a canvas with the selection
rules and publishes the resulting display records in a single transaction.
A manifest that fails at any step is logged and skipped; the run fails only
when the pool is too small, nothing could be built, or publishing failed, and
in every failure case the previously published set stays in place.
"""

from __future__ import annotations

import random
from concurrent.futures import ThreadPoolExecutor, as_completed

import requests
from tqdm import tqdm

from .config_manager import DisplaySettings, resolve_display_settings
from .logger import get_logger
from .manifest_normalizer import ManifestStructureError, normalize_manifest
from .models import DisplayRecord
from .selection_rules import SECURE_RANDOM, RuleEngine
from .services.storage.display_store import DisplayStore, DisplayStoreError
from .utils import ManifestFetchError, build_session, fetch_manifest_json

logger = get_logger(__name__)

# pylint: disable=broad-exception-caught


class PipelineError(RuntimeError):
    """A refresh run ended without publishing anything."""


class ManifestPoolExhaustedError(PipelineError):
    """The pool holds fewer manifest URLs than requested."""


class PoolUnavailableError(PipelineError):
    """The manifest URL pool could not be read."""


class EmptyResultError(PipelineError):
    """Every drawn manifest failed; there is nothing to publish."""


class PublishError(PipelineError):
    """Replacing the published display set failed and was rolled back."""


class DisplayPipeline:
    """Turn a random sample of the manifest pool into a published display set."""

    def __init__(
        self,
        store: DisplayStore,
        *,
        session: requests.Session | None = None,
        rng: random.Random | None = None,
        rule_engine: RuleEngine | None = None,
        timeout: float = 20,
        workers: int = 4,
        identifier_url_template: str | None = None,
        show_progress: bool = False,
    ):
        """Wire the pipeline; `rng` drives both the URL draw and canvas selection."""
        self.store = store
        self.session = session or build_session()
        self.rng = rng or SECURE_RANDOM
        self.rule_engine = rule_engine or RuleEngine(self.rng)
        self.timeout = timeout
        self.workers = max(1, int(workers))
        self.identifier_url_template = identifier_url_template
        self.show_progress = show_progress

    @classmethod
    def from_settings(cls, store: DisplayStore, settings: DisplaySettings, **kwargs) -> DisplayPipeline:
        kwargs.setdefault("timeout", settings.request_timeout)
        kwargs.setdefault("workers", settings.fetch_workers)
        kwargs.setdefault("identifier_url_template", settings.v3_item_url_pattern)
        return cls(store, **kwargs)

    def draw_manifest_urls(self, target_count: int) -> list[str]:
        """Draw `target_count` distinct URLs uniformly at random from the pool."""
        try:
            pool = self.store.get_manifest_urls()
        except DisplayStoreError as exc:
            logger.error("Could not read the manifest URL pool: %s", exc)
            raise PoolUnavailableError(str(exc)) from exc
        if len(pool) < target_count:
            logger.warning("Could not retrieve %s random manifests (pool has %s).", target_count, len(pool))
            raise ManifestPoolExhaustedError(
                f"Requested {target_count} manifests but only {len(pool)} URLs are configured"
            )
        return self.rng.sample(pool, target_count)

    def build_record(
        self, manifest_url: str, image_size: int, rule_text: str, rng: random.Random | None = None
    ) -> DisplayRecord:
        """Fetch one manifest and build its display record.

        `rng` drives this manifest's canvas pick (the rule engine's own generator when omitted).

        Raises ManifestFetchError or ManifestStructureError when the manifest must be skipped.
        """
        manifest = fetch_manifest_json(manifest_url, session=self.session, timeout=self.timeout)
        normalized = normalize_manifest(manifest, manifest_url, self.identifier_url_template)

        chosen = self.rule_engine.select_index(len(normalized.canvases), rule_text, rng)
        if chosen is None:
            raise ManifestStructureError(f"{manifest_url}: no canvas selected")

        record = normalized.display_record(chosen, image_size)
        logger.debug("Selected canvas %s/%s of %s", chosen + 1, len(normalized.canvases), manifest_url)
        return record

    def _safe_build_record(
        self, manifest_url: str, image_size: int, rule_text: str, rng: random.Random
    ) -> DisplayRecord | None:
        try:
            return self.build_record(manifest_url, image_size, rule_text, rng)
        except ManifestFetchError as exc:
            logger.error("Skipping manifest %s: %s", manifest_url, exc)
        except ManifestStructureError as exc:
            logger.warning("Skipping manifest %s: %s", manifest_url, exc)
        except Exception:
            logger.exception("Failed to process manifest %s", manifest_url)
        return None

    def collect_records(self, manifest_urls: list[str], image_size: int, rule_text: str) -> list[DisplayRecord]:
        """Process every URL with a bounded worker pool, keeping draw order.

        Each URL gets its own generator seeded from the pipeline RNG in draw
        order, so canvas picks do not depend on which fetch finishes first.
        """
        if not manifest_urls:
            return []

        child_rngs = [random.Random(self.rng.getrandbits(64)) for _ in manifest_urls]

        results: list[DisplayRecord | None] = [None] * len(manifest_urls)
        with ThreadPoolExecutor(max_workers=min(self.workers, len(manifest_urls))) as executor:
            future_to_index = {
                executor.submit(self._safe_build_record, url, image_size, rule_text, child_rngs[i]): i
                for i, url in enumerate(manifest_urls)
            }
            for future in tqdm(
                as_completed(future_to_index),
                total=len(future_to_index),
                desc="Manifests",
                disable=not self.show_progress,
            ):
                results[future_to_index[future]] = future.result()

        return [record for record in results if record is not None]

    def publish(self, records: list[DisplayRecord]) -> int:
        """Replace the published display set with `records` in one transaction."""
        try:
            return self.store.replace_display_images(records)
        except DisplayStoreError as exc:
            logger.error("Failed to save display images: %s", exc)
            raise PublishError(str(exc)) from exc

    def run(self, target_count: int, image_size: int, rule_text: str) -> int:
        """Execute one refresh and return the number of records published."""
        if target_count < 1:
            raise ValueError(f"target_count must be >= 1, got {target_count}")

        manifest_urls = self.draw_manifest_urls(target_count)
        records = self.collect_records(manifest_urls, image_size, rule_text)
        if not records:
            logger.warning("None of the %s drawn manifests produced a display record.", len(manifest_urls))
            raise EmptyResultError(f"All {len(manifest_urls)} drawn manifests failed")

        written = self.publish(records)
        logger.info("Published %s display images (%s manifests skipped).", written, len(manifest_urls) - written)
        return written


def update_displayed_images(
    number_of_images: int | None = None,
    image_size: int | None = None,
    selection_rules: str | None = None,
    *,
    store: DisplayStore | None = None,
    settings: DisplaySettings | None = None,
    **pipeline_kwargs,
) -> int | None:
    """Refresh the display set; return the count written, or None on failure.

    Arguments left as None fall back to the resolved display settings.
    """
    settings = settings or resolve_display_settings()
    target_count = number_of_images if number_of_images is not None else settings.number_of_images
    if target_count < 1:
        logger.warning("Display images were not updated: number of images must be >= 1, got %s", target_count)
        return None

    try:
        store = store or DisplayStore()
    except DisplayStoreError as exc:
        logger.error("Display images were not updated: %s", exc)
        return None
    pipeline = DisplayPipeline.from_settings(store, settings, **pipeline_kwargs)

    try:
        return pipeline.run(
            target_count,
            image_size if image_size is not None else settings.image_size,
            selection_rules if selection_rules is not None else settings.selection_rules,
        )
    except PipelineError as exc:
        logger.warning("Display images were not updated: %s", exc)
        return None


__all__ = [
    "DisplayPipeline",
    "EmptyResultError",
    "ManifestPoolExhaustedError",
    "PipelineError",
    "PoolUnavailableError",
    "PublishError",
    "update_displayed_images",
]

"""
Context Pipeline: high-level API for change-aware context windowing.

Combines all components: change analysis (diff parsing, strategy
selection), context extraction and the content cache.

Usage:
    cache = ContentCache(settings.effective_cache_config()).start()
    pipeline = ContextPipeline(GitProvider("."), settings.context, cache=cache)
    for item in pipeline.build_changed():
        send_to_reviewer(item.context.text)
    cache.shutdown()
"""

from __future__ import annotations

from typing import Any, Iterable, List, Optional

from loguru import logger
from pydantic import ValidationError

from ..cache_store import ContentCache, build_key, content_hash
from ..errors import DiffUnavailableError, FileUnreadableError
from ..git_provider import VersionControl
from ..schemas import ChangeAnalysis, ContextConfig, ExtractedContext, ReviewContext, Strategy
from .change_analyzer import ChangeAnalyzer, decode_content
from .context_extractor import ExtractionRequest, extract_context


REVIEW_RESULT_TTL_SECONDS = 3600


class ContextPipeline:
    """
    Per-file entry point: analyze -> select strategy -> extract, memoized.

    The cache handle is optional; without it every call recomputes.
    """

    def __init__(
        self,
        provider: VersionControl,
        config: Optional[ContextConfig] = None,
        cache: Optional[ContentCache] = None,
    ):
        self.provider = provider
        self.config = config or ContextConfig()
        self.cache = cache
        self.analyzer = ChangeAnalyzer(provider, self.config, cache)

    def analyze(self, path: str) -> ChangeAnalysis:
        return self.analyzer.analyze(path)

    def extract(self, path: str, analysis: ChangeAnalysis) -> ExtractedContext:
        """Extract the context slice chosen by `analysis` for `path`."""
        content = "" if analysis.is_deleted else decode_content(self.provider.read_file(path))

        key = self._context_key(content, analysis)
        if self.cache is not None:
            cached = self.cache.get(key)
            if cached is not None:
                try:
                    context = ExtractedContext.model_validate(cached)
                    logger.debug(f"Context cache hit: {path}")
                    return context
                except ValidationError as e:
                    logger.warning(f"Discarding stale cached context for {path}: {e}")
                    self.cache.invalidate(key)

        context = self._extract(path, content, analysis)

        if self.cache is not None:
            self.cache.set(key, context.model_dump(mode="json"), tags=["context", context.strategy.value])
        return context

    def build(self, path: str) -> ReviewContext:
        analysis = self.analyze(path)
        context = self.extract(path, analysis)
        logger.debug(
            f"{path}: {context.strategy.value}, {context.extracted_line_count}/{context.original_line_count} lines, "
            f"~{context.estimated_tokens} tokens"
        )
        return ReviewContext(file_path=path, analysis=analysis, context=context)

    def build_many(self, paths: Iterable[str]) -> List[ReviewContext]:
        """Build contexts for `paths`; unreadable files are skipped with a warning."""
        results: List[ReviewContext] = []
        for path in paths:
            try:
                results.append(self.build(path))
            except FileUnreadableError as e:
                logger.warning(f"Skipping {path}: {e}")
        return results

    def build_changed(self) -> List[ReviewContext]:
        """Build contexts for every file changed against the configured baseline."""
        paths = self.provider.changed_files(self.config.baseline)
        logger.info(f"Found {len(paths)} changed files against {self.config.baseline}")
        return self.build_many(paths)

    # ------------------------------------------------------------------
    # Downstream review results, keyed by the exact context text
    # ------------------------------------------------------------------

    def remember_review(self, context: ExtractedContext, result: Any) -> bool:
        if self.cache is None:
            return False
        return self.cache.set(
            self._review_key(context),
            result,
            ttl=REVIEW_RESULT_TTL_SECONDS,
            tags=["review"],
        )

    def recall_review(self, context: ExtractedContext) -> Optional[Any]:
        if self.cache is None:
            return None
        return self.cache.get(self._review_key(context))

    # ------------------------------------------------------------------

    def _context_key(self, content: str, analysis: ChangeAnalysis) -> str:
        facts = content_hash(
            {
                "analysis": analysis.model_dump(mode="json"),
                "config": self.config.model_dump(mode="json"),
            }
        )
        return build_key("context", content_hash(content), facts)

    @staticmethod
    def _review_key(context: ExtractedContext) -> str:
        return build_key("review", content_hash(context.text))

    def _extract(self, path: str, content: str, analysis: ChangeAnalysis) -> ExtractedContext:
        strategy = analysis.chosen_strategy
        diff_text = ""

        if strategy == Strategy.DIFF_ONLY:
            try:
                diff_text = self.provider.diff_regions(path, self.config.baseline)
            except DiffUnavailableError as e:
                logger.warning(f"{path}: diff unavailable ({e}); falling back to full_file")
                request = ExtractionRequest(path, content, analysis.regions, config=self.config)
                context = extract_context(Strategy.FULL_FILE, request)
                return context.model_copy(update={"requested_strategy": strategy})

        request = ExtractionRequest(
            file_path=path,
            content=content,
            regions=analysis.regions,
            diff_text=diff_text,
            config=self.config,
        )
        return extract_context(strategy, request)

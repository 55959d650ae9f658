from __future__ import annotations

import logging
import os
from typing import Dict, List, Optional, Sequence

from cropapi.services.domain import FeatureVector, Recommendation, Source
from cropapi.services.predictor import ModelPredictor
from cropapi.services.rules import RuleEngine
from cropapi.services.trainer import ModelTrainer, TrainingConfig, TrainingReport, TrainingState

log = logging.getLogger("cropapi.recommend")

DEFAULT_MAX_RESULTS = 5


def merge_recommendations(
    model_recs: Sequence[Recommendation],
    rule_recs: Sequence[Recommendation],
    limit: int = DEFAULT_MAX_RESULTS,
) -> List[Recommendation]:
    """Deduplicate by crop name, rank by confidence and keep the top ``limit``.

    A crop named by both sources keeps the model confidence and is tagged
    ``both``. A crop matched by several rules keeps its best rule confidence.
    Ties keep model entries ahead of rule-only entries.
    """
    rule_best: Dict[str, Recommendation] = {}
    for r in rule_recs:
        key = r.crop_name.casefold()
        if key not in rule_best or r.confidence > rule_best[key].confidence:
            rule_best[key] = r

    merged: Dict[str, Recommendation] = {}
    for m in model_recs:
        key = m.crop_name.casefold()
        if key in merged:
            continue
        source = Source.BOTH if key in rule_best else Source.MODEL
        merged[key] = Recommendation(m.crop_name, m.confidence, source)
    for key, r in rule_best.items():
        if key not in merged:
            merged[key] = Recommendation(r.crop_name, r.confidence, Source.RULE)

    ranked = sorted(merged.values(), key=lambda rec: -rec.confidence)
    return ranked[: max(limit, 0)]


class CropRecommender:
    """Entry point combining the trained classifier with the expert rules.

    Constructed once per process and shared; the trainer inside it owns the
    only mutable state.
    """

    def __init__(
        self,
        trainer: Optional[ModelTrainer] = None,
        rules: Optional[RuleEngine] = None,
        max_results: int = DEFAULT_MAX_RESULTS,
    ) -> None:
        self.trainer = trainer or ModelTrainer()
        self.predictor = ModelPredictor(self.trainer)
        self.rules = rules or RuleEngine()
        self.max_results = max_results

    @classmethod
    def from_env(cls) -> "CropRecommender":
        trainer = ModelTrainer(
            dataset_path=os.getenv("DATASET_PATH") or None,
            config=TrainingConfig.from_env(),
        )
        return cls(trainer=trainer, max_results=int(os.getenv("MAX_RESULTS", str(DEFAULT_MAX_RESULTS))))

    def is_model_ready(self) -> bool:
        return self.trainer.is_ready()

    def training_state(self) -> TrainingState:
        return self.trainer.state

    def training_report(self) -> Optional[TrainingReport]:
        return self.trainer.report

    async def warm_up(self) -> TrainingState:
        """Background training; a dataset failure waits for the first ``recommend()``."""
        return await self.trainer.warm_up()

    async def train(self) -> TrainingState:
        await self.trainer.ensure_ready()
        return self.trainer.state

    def evaluate_rules_only(self, raw: FeatureVector) -> List[Recommendation]:
        return merge_recommendations([], self.rules.evaluate(raw), self.max_results)

    async def recommend(self, raw: FeatureVector) -> List[Recommendation]:
        # DatasetLoadError propagates from here on the first attempt only.
        await self.trainer.ensure_ready()

        model_recs: List[Recommendation] = []
        if self.trainer.is_ready():
            vector = self.trainer.normalizer.normalize(raw)
            model_recs = (await self.predictor.predict(vector))[: self.max_results]

        rule_recs = self.rules.evaluate(raw)
        out = merge_recommendations(model_recs, rule_recs, self.max_results)
        log.info(
            "recommend: model=%d rules=%d merged=%d (state=%s)",
            len(model_recs),
            len(rule_recs),
            len(out),
            self.trainer.state.value,
        )
        return out

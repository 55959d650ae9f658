import asyncio
import itertools

import pytest

from conftest import PADDY, ZERO, FakeFit
from cropapi.services.domain import FeatureVector, Recommendation, Source
from cropapi.services.errors import DatasetLoadError
from cropapi.services.recommender import CropRecommender, merge_recommendations
from cropapi.services.trainer import TrainingState


def _m(name, conf):
    return Recommendation(name, conf, Source.MODEL)


def _r(name, conf):
    return Recommendation(name, conf, Source.RULE)


def _grid():
    for temp, hum, rain, soil in itertools.product(
        (0, 12, 25, 31, 45), (10, 72, 90), (0, 55, 120, 260), (None, "Clay", "Sandy", "Mud")
    ):
        yield FeatureVector(N=60, P=40, K=30, temperature=temp, humidity=hum, ph=6.5, rainfall=rain, soil_type=soil)


def _check_invariants(recs):
    assert 0 <= len(recs) <= 5
    assert all(0 <= r.confidence <= 100 for r in recs)
    confidences = [r.confidence for r in recs]
    assert confidences == sorted(confidences, reverse=True)
    names = [r.crop_name.casefold() for r in recs]
    assert len(names) == len(set(names))


class TestMerge:
    def test_crop_in_both_sources_keeps_model_confidence(self):
        out = merge_recommendations([_m("Rice", 40.0)], [_r("Rice", 85.0)])
        assert out == [Recommendation("Rice", 40.0, Source.BOTH)]

    def test_name_matching_ignores_case(self):
        out = merge_recommendations([_m("Rice", 40.0)], [_r("RICE", 85.0)])
        assert len(out) == 1 and out[0].source is Source.BOTH

    def test_best_rule_confidence_wins(self):
        out = merge_recommendations([], [_r("Rice", 85.0), _r("Maize", 80.0), _r("Rice", 90.0)])
        assert [(r.crop_name, r.confidence) for r in out] == [("Rice", 90.0), ("Maize", 80.0)]

    def test_ties_put_model_entries_first(self):
        out = merge_recommendations([_m("Maize", 70.0)], [_r("Mango", 70.0)])
        assert [r.crop_name for r in out] == ["Maize", "Mango"]
        out = merge_recommendations([], [_r("Mango", 70.0), _r("Coffee", 70.0)])
        assert [r.crop_name for r in out] == ["Mango", "Coffee"]

    def test_truncates_to_limit(self):
        model = [_m(f"Crop{i}", 50.0 - i) for i in range(4)]
        rules = [_r(f"Rule{i}", 80.0 - i) for i in range(4)]
        out = merge_recommendations(model, rules)
        assert len(out) == 5
        assert [r.crop_name for r in out] == ["Rule0", "Rule1", "Rule2", "Rule3", "Crop0"]
        assert merge_recommendations(model, rules, limit=2)[-1].crop_name == "Rule1"

    def test_empty_sources(self):
        assert merge_recommendations([], []) == []

    def test_duplicate_model_entries_collapse(self):
        out = merge_recommendations([_m("Rice", 60.0), _m("rice", 10.0)], [])
        assert out == [Recommendation("Rice", 60.0, Source.MODEL)]


def test_recommend_invariants_over_grid(make_recommender, fake_fit):
    rec = make_recommender(fake_fit)

    async def main():
        return [await rec.recommend(v) for v in _grid()]

    for recs in asyncio.run(main()):
        _check_invariants(recs)
    assert fake_fit.calls == 1


def test_recommend_is_idempotent_once_ready(make_recommender, fake_fit):
    rec = make_recommender(fake_fit)

    async def main():
        first = await rec.recommend(PADDY)
        second = await rec.recommend(PADDY)
        return first, second

    first, second = asyncio.run(main())
    assert rec.is_model_ready()
    assert first == second


def test_concurrent_recommend_trains_once(make_recommender):
    fit = FakeFit(delay=0.1)
    rec = make_recommender(fit)

    async def main():
        return await asyncio.gather(*(rec.recommend(PADDY) for _ in range(6)))

    results = asyncio.run(main())
    assert fit.calls == 1
    assert all(r == results[0] for r in results)


def test_model_and_rules_are_both_represented(make_recommender, fake_fit):
    rec = make_recommender(fake_fit)
    recs = asyncio.run(rec.recommend(PADDY))
    # the small dataset knows rice and maize, and paddy rules name both
    for r in recs:
        if r.crop_name in ("Rice", "Maize"):
            assert r.source is Source.BOTH
        elif r.crop_name == "Chickpea":
            assert r.source is Source.MODEL
        else:
            assert r.source is Source.RULE
    # cotton on clay is authored at 78 and no model crop can displace all rules
    assert Recommendation("Cotton", 78.0, Source.RULE) in recs


def test_all_zero_vector_does_not_raise(make_recommender, fake_fit):
    rec = make_recommender(fake_fit)
    recs = asyncio.run(rec.recommend(ZERO))
    _check_invariants(recs)
    assert rec.evaluate_rules_only(ZERO) == []


def test_failed_training_degrades_to_rules(make_recommender, nan_fit):
    rec = make_recommender(nan_fit)

    async def main():
        return [await rec.recommend(v) for v in (PADDY, ZERO, PADDY)]

    results = asyncio.run(main())
    assert not rec.is_model_ready()
    assert rec.training_state() is TrainingState.FAILED
    assert results[0] == rec.evaluate_rules_only(PADDY)
    assert results[1] == rec.evaluate_rules_only(ZERO)
    assert results[2] == results[0]
    assert nan_fit.calls == 1


def test_rules_only_ignores_training_state(make_recommender, fake_fit):
    rec = make_recommender(fake_fit)
    before = rec.evaluate_rules_only(PADDY)
    assert rec.training_state() is TrainingState.IDLE
    asyncio.run(rec.recommend(PADDY))
    assert rec.evaluate_rules_only(PADDY) == before
    assert before[0] == Recommendation("Rice", 90.0, Source.RULE)
    _check_invariants(before)


def test_dataset_failure_surfaces_on_first_recommend_only(make_recommender, fake_fit, tmp_path):
    rec = make_recommender(fake_fit, path=tmp_path / "gone.csv")
    with pytest.raises(DatasetLoadError):
        asyncio.run(rec.recommend(PADDY))

    assert rec.evaluate_rules_only(PADDY)
    assert asyncio.run(rec.recommend(PADDY)) == rec.evaluate_rules_only(PADDY)
    assert fake_fit.calls == 0


def test_from_env(monkeypatch, small_csv):
    monkeypatch.setenv("DATASET_PATH", str(small_csv))
    monkeypatch.setenv("MAX_RESULTS", "3")
    monkeypatch.setenv("TRAIN_EPOCHS", "4")
    rec = CropRecommender.from_env()
    assert rec.max_results == 3
    assert rec.trainer.config.epochs == 4
    assert rec.training_state() is TrainingState.IDLE


def test_cancelled_request_leaves_model_usable(make_recommender):
    fit = FakeFit(delay=0.3)
    rec = make_recommender(fit)

    async def main():
        first = asyncio.create_task(rec.recommend(PADDY))
        await asyncio.sleep(0.05)
        second = asyncio.create_task(rec.recommend(PADDY))
        await asyncio.sleep(0.05)
        first.cancel()
        await asyncio.gather(first, return_exceptions=True)
        return await second

    recs = asyncio.run(main())
    assert rec.training_state() is TrainingState.READY
    assert any(r.source is not Source.RULE for r in recs)
    assert fit.calls == 1


def test_dataset_failure_after_warm_up_reaches_first_recommend(make_recommender, fake_fit, tmp_path):
    rec = make_recommender(fake_fit, path=tmp_path / "gone.csv")
    assert asyncio.run(rec.warm_up()) is TrainingState.FAILED

    with pytest.raises(DatasetLoadError):
        asyncio.run(rec.recommend(PADDY))
    assert asyncio.run(rec.recommend(PADDY)) == rec.evaluate_rules_only(PADDY)

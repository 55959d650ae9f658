from __future__ import annotations

import logging
from dataclasses import asdict
from typing import Any, Dict, List

from fastapi import APIRouter, Depends, HTTPException, Request

from cropapi.deps.service import get_recommender
from cropapi.schemas import FeatureVectorIn, ModelStatusResponse, RecommendResponse
from cropapi.services.domain import FeatureVector, Recommendation
from cropapi.services.errors import DatasetLoadError
from cropapi.services.recommender import CropRecommender
from cropapi.utils.request_id import ensure_rid

router = APIRouter()
log = logging.getLogger("cropapi.routes")


def _dump(recs: List[Recommendation]) -> List[Dict[str, Any]]:
    return [r.as_dict() for r in recs]


def _status_payload(rec: CropRecommender, rid: str) -> Dict[str, Any]:
    report = rec.training_report()
    return {
        "ok": True,
        "request_id": rid,
        "model_ready": rec.is_model_ready(),
        "training_state": rec.training_state().value,
        "report": asdict(report) if report is not None else None,
    }


@router.get("/model", response_model=ModelStatusResponse)
async def model_status(request: Request, rec: CropRecommender = Depends(get_recommender)):
    return _status_payload(rec, ensure_rid(request))


@router.post("/train", response_model=ModelStatusResponse)
async def train(request: Request, rec: CropRecommender = Depends(get_recommender)):
    rid = ensure_rid(request)
    log.info("/train called (rid=%s)", rid)
    try:
        await rec.train()
    except DatasetLoadError as exc:
        raise HTTPException(status_code=500, detail={"code": 100, "message": str(exc)})
    return _status_payload(rec, rid)


@router.post("/recommend", response_model=RecommendResponse)
async def recommend(
    body: FeatureVectorIn,
    request: Request,
    rec: CropRecommender = Depends(get_recommender),
):
    rid = ensure_rid(request)
    log.info("/recommend called (rid=%s)", rid)

    try:
        recs = await rec.recommend(FeatureVector.from_mapping(body))
    except DatasetLoadError as exc:
        raise HTTPException(status_code=500, detail={"code": 100, "message": str(exc)})
    except ValueError as exc:
        raise HTTPException(status_code=400, detail={"code": 200, "message": str(exc)})
    except Exception:
        log.exception("recommend failed (rid=%s)", rid)
        raise HTTPException(status_code=500, detail={"code": 900, "message": "internal error"})

    return {
        "ok": True,
        "request_id": rid,
        "model_ready": rec.is_model_ready(),
        "recommendations": _dump(recs),
    }


@router.post("/recommend/rules", response_model=RecommendResponse)
async def recommend_rules(
    body: FeatureVectorIn,
    request: Request,
    rec: CropRecommender = Depends(get_recommender),
):
    rid = ensure_rid(request)
    log.info("/recommend/rules called (rid=%s)", rid)
    recs = rec.evaluate_rules_only(FeatureVector.from_mapping(body))
    return {
        "ok": True,
        "request_id": rid,
        "model_ready": rec.is_model_ready(),
        "recommendations": _dump(recs),
    }

from fastapi import APIRouter, Depends, Request

from cropapi.deps.service import get_recommender
from cropapi.services.recommender import CropRecommender
from cropapi.utils.request_id import ensure_rid

router = APIRouter()


@router.get("/health")
def health(request: Request, rec: CropRecommender = Depends(get_recommender)):
    return {
        "ok": True,
        "model_ready": rec.is_model_ready(),
        "training_state": rec.training_state().value,
        "request_id": ensure_rid(request),
    }


@router.get("/ready")
def ready(request: Request, rec: CropRecommender = Depends(get_recommender)):
    # the rules path is always available; this reports the model only
    return {"ok": rec.is_model_ready(), "request_id": ensure_rid(request)}

from fastapi import HTTPException, Request

from cropapi.services.recommender import CropRecommender


def get_recommender(request: Request) -> CropRecommender:
    rec = getattr(request.app.state, "recommender", None)
    if rec is None:
        raise HTTPException(status_code=503, detail={"code": 100, "message": "recommender not initialised"})
    return rec

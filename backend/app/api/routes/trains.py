"""
Catalog endpoints: stations, train search and seat maps.

Stations and search results are cached in Redis; seat maps never are.
"""

from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.session import get_db
from app.schemas.catalog import SeatMapResponse, StationResponse, TrainResponse, TrainSearchResponse
from app.services import cache_service
from app.services.catalog_service import get_seat_map, get_train, list_stations, search_trains, train_to_dict
from app.core.security import get_optional_user_id
from app.core.logging import get_logger

logger = get_logger(__name__)
router = APIRouter(tags=["Trains"])


@router.get("/stations", response_model=list[StationResponse])
async def list_stations_endpoint(db: AsyncSession = Depends(get_db)):
    key = cache_service.stations_key()
    cached = await cache_service.get_cached(key)
    if cached is not None:
        return cached

    stations = [StationResponse.model_validate(s).model_dump() for s in await list_stations(db)]
    await cache_service.set_cached(key, stations)
    return stations


@router.get("/trains/search", response_model=TrainSearchResponse)
async def search_trains_endpoint(
    origin: int = Query(..., description="Origin station id"),
    destination: int = Query(..., description="Destination station id"),
    travel_date: Optional[date] = Query(None),
    db: AsyncSession = Depends(get_db),
):
    """
    Trains running between two stations.

    The timetable does not depend on the travel date, so results are cached per
    station pair; availability comes from the seat map.
    """
    key = cache_service.search_key(origin, destination)
    cached = await cache_service.get_cached(key)
    if cached is not None:
        logger.info("train_search_cache_hit", origin=origin, destination=destination)
        return TrainSearchResponse(trains=cached, cached=True)

    trains = [train_to_dict(t) for t in await search_trains(db, origin, destination)]
    await cache_service.set_cached(key, trains)
    return TrainSearchResponse(trains=trains)


@router.get("/trains/{train_id}", response_model=TrainResponse)
async def get_train_endpoint(train_id: int, db: AsyncSession = Depends(get_db)):
    return train_to_dict(await get_train(db, train_id))


@router.get("/trains/{train_id}/classes/{class_id}/seats", response_model=SeatMapResponse)
async def seat_map_endpoint(
    train_id: int,
    class_id: int,
    travel_date: date = Query(...),
    viewer_id: Optional[int] = Depends(get_optional_user_id),
    db: AsyncSession = Depends(get_db),
):
    """Seat map as seen by the caller: their own hold shows as selected."""
    seats = await get_seat_map(db, train_id, class_id, travel_date, viewer_id=viewer_id)
    return SeatMapResponse(train_id=train_id, train_class_id=class_id, travel_date=travel_date, seats=seats)

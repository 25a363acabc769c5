"""Car catalog API routes.

Pagination is keyset based: pass the ``nextCursor`` of a page back as
``cursor`` to get the following page. A cursor is bound to the sort key and
filter set it was issued under.
"""

from fastapi import APIRouter, Depends, HTTPException, Path, Query, status
from pydantic import ValidationError
from sqlalchemy.orm import Session

from app.api.services.car_service import CarService, InvalidSortError
from app.api.services.cursor import CursorError
from app.api.services.facet_service import FacetService
from app.api.services.filters import CarFilters
from app.core.config import get_settings
from app.core.database import get_db
from app.core.rate_limit import rate_limit
from app.schemas.car import CarDetail, CarOut, CarPageResponse, RangesResponse

settings = get_settings()

router = APIRouter(
    prefix="/cars",
    tags=["cars"],
    dependencies=[Depends(rate_limit("default"))],
)


def get_car_filters(
    make: str | None = Query(None, max_length=100),
    model: str | None = Query(None, max_length=100),
    year_min: int | None = Query(None, ge=1900, le=2100),
    year_max: int | None = Query(None, ge=1900, le=2100),
    price_min: float | None = Query(None, ge=0, description="Whole currency units"),
    price_max: float | None = Query(None, ge=0, description="Whole currency units"),
    mileage_max: int | None = Query(None, ge=0),
    fuel: str | None = Query(None, max_length=50),
    transmission: str | None = Query(None, max_length=50),
    body_type: str | None = Query(None, max_length=50),
    color: str | None = Query(None, max_length=50),
    q: str | None = Query(None, max_length=200, description="Free-text search"),
    sale_status: str | None = Query(
        None, alias="status", max_length=100,
        description="Comma separated sale statuses (default: active,pending)",
    ),
) -> CarFilters:
    """Build a validated ``CarFilters`` from query parameters."""
    try:
        return CarFilters(
            make=make,
            model=model,
            year_min=year_min,
            year_max=year_max,
            price_min=price_min,
            price_max=price_max,
            mileage_max=mileage_max,
            fuel=fuel,
            transmission=transmission,
            body_type=body_type,
            color=color,
            q=q,
            status=sale_status,
        )
    except ValidationError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=[error["msg"] for error in e.errors()],
        ) from e


@router.get("", response_model=CarPageResponse)
async def list_cars(
    filters: CarFilters = Depends(get_car_filters),
    sort: str | None = Query(None, max_length=50, description="e.g. price_asc, year_desc, popular"),
    cursor: str | None = Query(None, max_length=2048),
    limit: int = Query(settings.page_default_limit, ge=1, le=settings.page_max_limit),
    db: Session = Depends(get_db),
):
    """Get one globally sorted page of cars."""
    service = CarService(db)
    try:
        page = service.list_cars(filters=filters, sort=sort, cursor=cursor, limit=limit)
    except (InvalidSortError, CursorError) as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e)) from e

    return CarPageResponse(
        items=[CarOut.model_validate(car) for car in page.items],
        next_cursor=page.next_cursor,
        total=page.total,
        has_next=page.has_next,
        sort=page.sort,
        limit=page.limit,
    )


@router.get("/facets", response_model=dict[str, dict[str, int]])
async def get_facets(
    filters: CarFilters = Depends(get_car_filters),
    db: Session = Depends(get_db),
):
    """Value counts per facet field; each facet ignores its own filter."""
    return FacetService(db).facet_counts(filters)


@router.get("/ranges", response_model=RangesResponse)
async def get_ranges(
    filters: CarFilters = Depends(get_car_filters),
    db: Session = Depends(get_db),
):
    """Min/max year, price and mileage over the filtered set."""
    return FacetService(db).ranges(filters)


@router.get("/{car_id}", response_model=CarDetail)
async def get_car(
    car_id: str = Path(..., min_length=1, max_length=36),
    db: Session = Depends(get_db),
):
    """Get a single car by id."""
    car = CarService(db).get_car(car_id)
    if car is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Car {car_id} not found",
        )
    return CarDetail.model_validate(car)

from __future__ import annotations

from fastapi import APIRouter, Depends, Response, status
from sqlalchemy.orm import Session

from lobster.api.deps import get_db, get_registry, require_api_user
from lobster.errors import NotFoundError
from lobster.models.image import Image
from lobster.schemas import api as schemas

router = APIRouter(prefix="/api/images", tags=["images"])


def _status_value(value) -> str:
    return getattr(value, "value", value) or "unknown"


def image_out(image: Image) -> schemas.Image:
    return schemas.Image(id=image.id, region=image.region, name=image.name, status=_status_value(image.status))


@router.get("", response_model=schemas.ImageListResponse)
def list_images(
    db: Session = Depends(get_db),
    registry=Depends(get_registry),
    user_id: int = Depends(require_api_user),
):
    from lobster.services.image_service import ImageService

    return schemas.ImageListResponse(images=[image_out(image) for image in ImageService(db, registry).list(user_id)])


@router.post("", response_model=schemas.ImageFetchResponse, status_code=status.HTTP_201_CREATED)
def fetch_image(
    payload: schemas.ImageFetchRequest,
    db: Session = Depends(get_db),
    registry=Depends(get_registry),
    user_id: int = Depends(require_api_user),
):
    from lobster.services.image_service import ImageService

    image_id = ImageService(db, registry).fetch(user_id, payload.region, payload.name, payload.url, payload.format)
    db.commit()
    return schemas.ImageFetchResponse(id=image_id)


@router.get("/{image_id}", response_model=schemas.ImageInfoResponse)
def get_image(
    image_id: int,
    db: Session = Depends(get_db),
    registry=Depends(get_registry),
    user_id: int = Depends(require_api_user),
):
    from lobster.services.image_service import ImageService

    result = ImageService(db, registry).info(user_id, image_id)
    if result is None:
        raise NotFoundError("invalid_image")
    image, info = result
    details = schemas.ImageDetails(size=info.size, status=_status_value(info.status), details=info.details)
    return schemas.ImageInfoResponse(image=image_out(image), details=details)


@router.delete("/{image_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_image(
    image_id: int,
    db: Session = Depends(get_db),
    registry=Depends(get_registry),
    user_id: int = Depends(require_api_user),
):
    from lobster.services.image_service import ImageService

    ImageService(db, registry).delete(user_id, image_id)
    db.commit()
    return Response(status_code=status.HTTP_204_NO_CONTENT)

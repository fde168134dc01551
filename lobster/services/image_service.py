from __future__ import annotations

import logging

from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session

from lobster.drivers.base import ImageCapable, ImageInfo
from lobster.drivers.registry import DriverRegistry
from lobster.errors import LobsterError, ProviderError
from lobster.models.image import Image, ImageStatus
from lobster.models.user import User
from lobster.services import email as email_service
from lobster.services.common import MINIMUM_CREDIT

logger = logging.getLogger(__name__)

PENDING_BATCH_SIZE = 3


class ImageService:
    def __init__(self, db: Session, registry: DriverRegistry):
        self.db = db
        self.registry = registry

    def _visible(self, user_id: int):
        return select(Image).where(or_(Image.user_id.is_(None), Image.user_id == user_id))

    def list(self, user_id: int) -> list[Image]:
        return list(self.db.scalars(self._visible(user_id).order_by(Image.region, Image.name)).all())

    def list_region(self, user_id: int, region: str) -> list[Image]:
        stmt = self._visible(user_id).where(Image.region == region).order_by(Image.name)
        return list(self.db.scalars(stmt).all())

    def list_all(self) -> list[Image]:
        return list(self.db.scalars(select(Image).order_by(Image.region, Image.name)).all())

    def get(self, user_id: int, image_id: int) -> Image | None:
        """Image visible to ``user_id``: public or owned."""
        return self.db.scalars(self._visible(user_id).where(Image.id == image_id)).first()

    def get_any(self, image_id: int) -> Image | None:
        return self.db.get(Image, image_id)

    def list_pending_for_vm(self, vm_id: int) -> list[Image]:
        stmt = select(Image).where(Image.source_vm_id == vm_id).where(Image.status == ImageStatus.pending)
        return list(self.db.scalars(stmt).all())

    def _image_driver(self, region: str) -> ImageCapable:
        if not self.registry.has(region):
            raise LobsterError("invalid_region")
        driver = self.registry.get(region)
        if not isinstance(driver, ImageCapable):
            raise LobsterError("region_images_unsupported")
        return driver

    def fetch(self, user_id: int, region: str, name: str, url: str, image_format: str = "template") -> int:
        user = self.db.get(User, user_id)
        if user is None:
            raise LobsterError("invalid_account")
        if user.credit < MINIMUM_CREDIT:
            raise LobsterError("insufficient_credit")
        if not name:
            raise LobsterError("invalid_name")
        driver = self._image_driver(region)

        try:
            identification = driver.image_fetch(url, image_format)
        except Exception as exc:
            email_service.report_error(
                ProviderError("image_fetch", exc), "image fetch failed", f"user_id={user_id}, region={region}, url={url}"
            )
            raise LobsterError("provider_error") from exc

        image = Image(user_id=user_id, region=region, name=name, identification=identification)
        self.db.add(image)
        self.db.flush()
        logger.info("User %d fetching image %d (%s) in %s", user_id, image.id, name, region)
        return image.id

    def add(self, name: str, region: str, identification: str) -> Image:
        """Register a provider image as public and active."""
        if not self.registry.has(region):
            raise LobsterError("invalid_region")
        image = Image(
            user_id=None,
            region=region,
            name=name,
            identification=identification,
            status=ImageStatus.active,
        )
        self.db.add(image)
        self.db.flush()
        return image

    def delete(self, user_id: int, image_id: int) -> None:
        image = self.db.scalars(select(Image).where(Image.id == image_id).where(Image.user_id == user_id)).first()
        if image is None:
            raise LobsterError("invalid_image")
        driver = self._image_driver(image.region)
        try:
            driver.image_delete(image.identification)
        except Exception as exc:
            email_service.report_error(
                ProviderError("image_delete", exc), "image delete failed", f"image_id={image_id}"
            )
            raise LobsterError("provider_error") from exc
        self.db.delete(image)
        self.db.flush()

    def delete_force(self, image_id: int) -> None:
        image = self.db.get(Image, image_id)
        if image is None:
            raise LobsterError("invalid_image")
        driver = self.registry.get(image.region) if self.registry.has(image.region) else None
        if isinstance(driver, ImageCapable) and image.identification:
            try:
                driver.image_delete(image.identification)
            except Exception as exc:
                email_service.report_error(
                    ProviderError("image_delete", exc), "forced image delete failed at provider", f"image_id={image_id}"
                )
        self.db.delete(image)
        self.db.flush()

    def info(self, user_id: int, image_id: int) -> tuple[Image, ImageInfo] | None:
        image = self.get(user_id, image_id)
        if image is None:
            return None
        driver = self.registry.get(image.region) if self.registry.has(image.region) else None
        if not isinstance(driver, ImageCapable) or not image.identification:
            return image, ImageInfo(size=0, status=image.status)
        try:
            return image, driver.image_info(image.identification)
        except Exception as exc:
            email_service.report_error(ProviderError("image_info", exc), "image info failed", f"image_id={image_id}")
            return image, ImageInfo(size=0, status=image.status)

    def storage_bytes(self, user_id: int) -> int:
        """Total size reported by providers for images the user owns."""
        total = 0
        owned = self.db.scalars(select(Image.id).where(Image.user_id == user_id)).all()
        for image_id in owned:
            result = self.info(user_id, image_id)
            if result is not None and result[1].size > 0:
                total += result[1].size
        return total

    def autopopulate(self, region: str) -> int:
        driver = self._image_driver(region)
        try:
            provider_images = driver.image_list()
        except Exception as exc:
            email_service.report_error(ProviderError("image_list", exc), "image autopopulate failed", f"region={region}")
            raise LobsterError("provider_error") from exc

        known = set(self.db.scalars(select(Image.identification).where(Image.region == region)).all())
        added = 0
        for provider_image in provider_images:
            if provider_image.identification in known:
                continue
            self.add(provider_image.name, region, provider_image.identification)
            known.add(provider_image.identification)
            added += 1
        logger.info("Autopopulated %d images for region %s", added, region)
        return added

    def refresh_pending(self, limit: int = PENDING_BATCH_SIZE) -> int:
        """Poll the provider for a few random pending images and settle their status."""
        pending = self.db.scalars(
            select(Image).where(Image.status == ImageStatus.pending).order_by(func.random()).limit(limit)
        ).all()
        settled = 0
        for image in pending:
            driver = self.registry.get(image.region) if self.registry.has(image.region) else None
            if not isinstance(driver, ImageCapable):
                continue
            try:
                info = driver.image_info(image.identification)
            except Exception as exc:
                email_service.report_error(
                    ProviderError("image_info", exc), "pending image check failed", f"image_id={image.id}"
                )
                continue
            if info.status in (ImageStatus.active, ImageStatus.error):
                image.status = ImageStatus(info.status)
                settled += 1
                logger.info("Image %d is now %s", image.id, image.status.value)
        self.db.flush()
        return settled

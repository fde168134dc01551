"""Tests for the image, plan and region catalog services."""

import pytest

from lobster.drivers.base import ProviderImage, ProviderPlan, VmInterface
from lobster.drivers.registry import DriverRegistry
from lobster.errors import LobsterError
from lobster.models.image import ImageStatus
from lobster.services.image_service import ImageService
from lobster.services.plan_service import PlanService
from lobster.services.region_service import RegionService
from tests.conftest import REGION, make_image, make_plan, make_user


class PowerOnlyDriver(VmInterface):
    def vm_create(self, vm, image_identification):
        return "x"

    def vm_delete(self, vm):
        pass

    def vm_info(self, vm):
        raise NotImplementedError

    def vm_start(self, vm):
        pass

    def vm_stop(self, vm):
        pass

    def vm_reboot(self, vm):
        pass

    def vm_action(self, vm, action, value):
        pass

    def bandwidth_accounting(self, vm):
        return 0


@pytest.fixture()
def two_regions(fake_driver):
    registry = DriverRegistry()
    registry.register(REGION, fake_driver)
    registry.register("bare", PowerOnlyDriver())
    registry.freeze()
    return registry


# images


def test_images_visible_to_owner_only(db_session, registry, user):
    other = make_user(db_session, "bob")
    public = make_image(db_session, "debian")
    mine = make_image(db_session, "mine", user_id=user.id)
    theirs = make_image(db_session, "theirs", user_id=other.id)
    svc = ImageService(db_session, registry)

    assert [image.id for image in svc.list(user.id)] == [public.id, mine.id]
    assert svc.get(user.id, theirs.id) is None
    assert svc.info(user.id, theirs.id) is None
    with pytest.raises(LobsterError) as exc_info:
        svc.delete(user.id, public.id)
    assert exc_info.value.code == "invalid_image"


def test_fetch_requires_credit(db_session, registry):
    broke = make_user(db_session, "bob", credit=0.5)
    with pytest.raises(LobsterError) as exc_info:
        ImageService(db_session, registry).fetch(broke.id, REGION, "x", "https://example.com/x.img")
    assert exc_info.value.code == "insufficient_credit"


def test_fetch_provider_failure(db_session, registry, fake_driver, user, outbox):
    fake_driver.fail_on.add("image_fetch")
    with pytest.raises(LobsterError) as exc_info:
        ImageService(db_session, registry).fetch(user.id, REGION, "x", "https://example.com/x.img")
    assert exc_info.value.code == "provider_error"
    assert outbox[0]["subject"] == "Error: image fetch failed"


def test_fetch_in_region_without_image_support(db_session, two_regions, user):
    with pytest.raises(LobsterError) as exc_info:
        ImageService(db_session, two_regions).fetch(user.id, "bare", "x", "https://example.com/x.img")
    assert exc_info.value.code == "region_images_unsupported"


def test_info_without_image_support_reports_zero_size(db_session, two_regions, user):
    image = make_image(db_session, "legacy", user_id=user.id, region="bare")
    _, info = ImageService(db_session, two_regions).info(user.id, image.id)
    assert info.size == 0
    assert info.status == ImageStatus.active


def test_storage_bytes(db_session, registry, user):
    make_image(db_session, "a", user_id=user.id)
    make_image(db_session, "b", user_id=user.id)
    make_image(db_session, "public")
    assert ImageService(db_session, registry).storage_bytes(user.id) == 2 * 1024 * 1024 * 1024


def test_refresh_pending_settles_a_batch(db_session, registry, user):
    for index in range(5):
        make_image(db_session, f"snap{index}", user_id=user.id, status=ImageStatus.pending)
    svc = ImageService(db_session, registry)
    assert svc.refresh_pending() == 3
    assert svc.refresh_pending() == 2
    assert svc.refresh_pending() == 0


def test_delete_force_survives_provider_failure(db_session, registry, fake_driver, user, outbox):
    image = make_image(db_session, "snap", user_id=user.id)
    fake_driver.fail_on.add("image_delete")
    svc = ImageService(db_session, registry)
    svc.delete_force(image.id)
    assert svc.get_any(image.id) is None
    assert outbox[0]["subject"] == "Error: forced image delete failed at provider"


def test_image_autopopulate_skips_known(db_session, registry, fake_driver):
    make_image(db_session, "debian", identification="d12")
    fake_driver.images = [ProviderImage(name="debian", identification="d12"), ProviderImage(name="alpine", identification="a3")]
    assert ImageService(db_session, registry).autopopulate(REGION) == 1


def test_image_autopopulate_provider_failure(db_session, registry, fake_driver, outbox):
    fake_driver.fail_on.add("image_list")
    with pytest.raises(LobsterError) as exc_info:
        ImageService(db_session, registry).autopopulate(REGION)
    assert exc_info.value.code == "provider_error"


# plans


def test_plan_region_visibility(db_session, two_regions):
    everywhere = make_plan(db_session, "everywhere")
    regional = make_plan(db_session, "regional", is_global=False)
    svc = PlanService(db_session, two_regions)
    svc.associate_region(regional.id, "bare", "prov-1")

    assert [plan.id for plan in svc.list_region(REGION)] == [everywhere.id]
    assert [plan.id for plan in svc.list_region("bare")] == [everywhere.id, regional.id]
    assert svc.get_region(regional.id, REGION) is None
    assert regional.identification_for("bare") == "prov-1"

    svc.associate_region(regional.id, "bare", "prov-2")
    assert regional.identification_for("bare") == "prov-2"
    assert len(regional.region_bindings) == 1


def test_plan_create_requires_name(db_session, registry):
    with pytest.raises(LobsterError) as exc_info:
        PlanService(db_session, registry).create("", 0, 1, 1, 1, 1)
    assert exc_info.value.code == "invalid_name"


def test_plan_associate_unknown_region(db_session, registry, plan):
    with pytest.raises(LobsterError) as exc_info:
        PlanService(db_session, registry).associate_region(plan.id, "nowhere", "x")
    assert exc_info.value.code == "invalid_region"


def test_plan_autopopulate_unsupported(db_session, two_regions):
    with pytest.raises(LobsterError) as exc_info:
        PlanService(db_session, two_regions).autopopulate("bare")
    assert exc_info.value.code == "region_plans_unsupported"


def test_plan_autopopulate_provider_failure(db_session, registry, fake_driver, outbox):
    fake_driver.plans = [ProviderPlan(name="p1", ram=512, cpu=1, storage=10, bandwidth=500, identification="p-1")]
    fake_driver.fail_on.add("plan_list")
    with pytest.raises(LobsterError):
        PlanService(db_session, registry).autopopulate(REGION)
    assert outbox[0]["subject"] == "Error: plan autopopulate failed"


# regions


def test_region_toggle(db_session, two_regions):
    svc = RegionService(db_session, two_regions)
    assert svc.list() == ["bare", REGION]
    svc.disable("bare")
    assert svc.list() == [REGION]
    assert svc.is_enabled("bare") is False
    assert svc.list_all() == [{"name": "bare", "enabled": False}, {"name": REGION, "enabled": True}]
    svc.enable("bare")
    assert svc.is_enabled("bare") is True


def test_region_unknown(db_session, registry):
    svc = RegionService(db_session, registry)
    assert svc.is_enabled("nowhere") is False
    with pytest.raises(LobsterError):
        svc.disable("nowhere")

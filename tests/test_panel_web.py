"""Tests for the customer panel routes."""

from urllib.parse import parse_qs, urlparse

from sqlalchemy import select

from lobster.models.auth import ApiKey
from lobster.models.billing import Transaction
from lobster.models.image import Image, ImageStatus
from lobster.models.region import Region
from lobster.models.vm import VirtualMachine, VmStatus
from lobster.services.auth_service import check_password
from tests.conftest import REGION, make_image, make_user, make_vm


def _post(client, path, **data):
    data["token"] = client.form_token()
    return client.post(path, data=data, follow_redirects=False)


def _message(response) -> dict:
    query = parse_qs(urlparse(response.headers["location"]).query)
    return {"message": query.get("message", [""])[0], "type": query.get("type", [""])[0]}


def test_dashboard(user_client, user, vm):
    page = user_client.get("/panel/dashboard").json()
    assert page["title"] == "Dashboard"
    assert page["user"]["username"] == user.username
    assert page["user"]["credit"] == "10.000"
    assert [item["id"] for item in page["vms"]] == [vm.id]
    assert page["credit_summary"]["hourly"] == vm.plan.price


def test_new_vm_flow(user_client, db_session, plan, image, fake_driver):
    page = user_client.get(f"/panel/newvm/{REGION}").json()
    assert [p["id"] for p in page["plans"]] == [plan.id]
    assert [i["id"] for i in page["images"]] == [image.id]

    response = user_client.post(
        f"/panel/newvm/{REGION}",
        data={"token": page["token"], "name": "web1", "plan_id": plan.id, "image_id": image.id},
        follow_redirects=False,
    )
    assert response.status_code == 303
    vm_id = int(response.headers["location"].rsplit("/", 1)[1])
    vm = db_session.get(VirtualMachine, vm_id)
    db_session.refresh(vm)
    assert vm.status == VmStatus.active
    assert fake_driver.calls["create"] == 1


def test_new_vm_rejects_image_from_other_region(user_client, db_session, plan):
    other = make_image(db_session, "other", region="elsewhere")
    response = _post(user_client, f"/panel/newvm/{REGION}", name="web1", plan_id=plan.id, image_id=other.id)
    assert response.headers["location"].startswith(f"/panel/newvm/{REGION}?")
    assert _message(response)["message"] == "specified image does not exist"


def test_new_vm_validation_error_is_shown(user_client, plan, image):
    response = _post(user_client, f"/panel/newvm/{REGION}", name="", plan_id=plan.id, image_id=image.id)
    assert _message(response) == {"message": "name cannot be empty", "type": "danger"}


def test_new_vm_page_for_disabled_region(user_client, db_session):
    db_session.add(Region(name=REGION, enabled=False))
    db_session.commit()
    response = user_client.get(f"/panel/newvm/{REGION}", follow_redirects=False)
    assert response.headers["location"].startswith("/panel/newvm?")
    assert user_client.get("/panel/newvm").json()["regions"] == []


def test_vm_page(user_client, vm):
    page = user_client.get(f"/panel/vm/{vm.id}").json()
    assert page["vm"]["id"] == vm.id
    assert page["details"]["status"] == "Online"
    assert page["details"]["can_snapshot"] is True
    assert page["details"]["actions"][0]["action"] == "rescue"
    assert len(page["plans"]) == 1


def test_vm_page_of_another_user(user_client, db_session, plan, registry):
    stranger = make_user(db_session, "mallory")
    theirs = make_vm(db_session, stranger, plan)
    response = user_client.get(f"/panel/vm/{theirs.id}", follow_redirects=False)
    assert response.headers["location"].startswith("/panel/vms?")
    assert _message(response)["message"] == "No virtual machine with that ID"


def test_vm_power_actions(user_client, vm, fake_driver):
    response = _post(user_client, f"/panel/vm/{vm.id}/stop")
    assert _message(response) == {"message": "VM stop requested", "type": "success"}
    _post(user_client, f"/panel/vm/{vm.id}/start")
    _post(user_client, f"/panel/vm/{vm.id}/reboot")
    assert (fake_driver.calls["stop"], fake_driver.calls["start"], fake_driver.calls["reboot"]) == (1, 1, 1)


def test_vm_unknown_action(user_client, vm):
    response = _post(user_client, f"/panel/vm/{vm.id}/explode")
    assert _message(response)["message"] == "operation not supported"


def test_vm_custom_action(user_client, vm, fake_driver):
    response = _post(user_client, f"/panel/vm/{vm.id}/action/rescue")
    assert _message(response)["type"] == "success"
    assert fake_driver.calls["action"] == 1


def test_vm_vnc_redirects(user_client, vm):
    response = _post(user_client, f"/panel/vm/{vm.id}/vnc")
    assert response.status_code == 303
    assert response.headers["location"] == f"https://vnc.example.com/?vm={vm.id}"


def test_vm_rename(user_client, db_session, vm):
    _post(user_client, f"/panel/vm/{vm.id}/rename", name="db1")
    db_session.refresh(vm)
    assert vm.name == "db1"


def test_vm_snapshot(user_client, db_session, vm):
    response = _post(user_client, f"/panel/vm/{vm.id}/snapshot", name="nightly")
    image = db_session.scalars(select(Image).where(Image.name == "nightly")).one()
    assert response.headers["location"].startswith(f"/panel/image/{image.id}?")
    assert image.status == ImageStatus.pending


def test_vm_delete(user_client, db_session, vm, fake_driver):
    vm_id = vm.id
    response = _post(user_client, f"/panel/vm/{vm_id}/delete")
    assert response.headers["location"].startswith("/panel/vms?")
    db_session.expire_all()
    assert db_session.get(VirtualMachine, vm_id) is None
    assert fake_driver.calls["delete"] == 1


def test_billing_and_payment(user_client, db_session, user):
    page = user_client.get("/panel/billing").json()
    assert page["payment_methods"] == ["fake"]

    response = user_client.post(
        "/panel/pay", data={"token": page["token"], "method": "fake", "amount": "25"}, follow_redirects=False
    )
    assert response.headers["location"].startswith("/panel/billing?")
    transaction = db_session.scalars(select(Transaction)).one()
    assert transaction.gateway == "fake"
    db_session.refresh(user)
    assert user.credit == 35_000_000


def test_payment_rejects_bad_amounts(user_client):
    response = _post(user_client, "/panel/pay", method="fake", amount="1")
    assert _message(response)["message"] == "amount must be between 5.0 and 1000.0"
    response = _post(user_client, "/panel/pay", method="bitcoin", amount="10")
    assert _message(response)["message"] == "invalid payment method"


def test_charges_pages(user_client, db_session, vm):
    from lobster.services.ledger_service import LedgerService

    LedgerService(db_session).apply_charge(vm.user_id, vm.name, "Plan: small", f"vm-{vm.id}", 10_000)
    db_session.commit()
    page = user_client.get("/panel/charges").json()
    assert [charge["amount"] for charge in page["charges"]] == ["0.010"]
    assert user_client.get("/panel/charges/2001/1").json()["charges"] == []
    assert user_client.get("/panel/charges/2001/13", follow_redirects=False).status_code == 303


def test_images(user_client, db_session, user, image):
    page = user_client.get("/panel/images").json()
    assert page["regions"] == [REGION]
    assert [i["id"] for i in page["images"]] == [image.id]

    response = _post(user_client, "/panel/images/add", region=REGION, name="custom", url="https://example.com/x.img")
    custom = db_session.scalars(select(Image).where(Image.name == "custom")).one()
    assert response.headers["location"].startswith(f"/panel/image/{custom.id}?")
    assert custom.user_id == user.id

    detail = user_client.get(f"/panel/image/{custom.id}").json()
    assert detail["owned"] is True
    assert detail["info"]["size"] == 1024 * 1024 * 1024

    _post(user_client, f"/panel/image/{custom.id}/remove")
    db_session.expire_all()
    assert db_session.get(Image, custom.id) is None


def test_public_images_cannot_be_removed_by_users(user_client, image):
    response = _post(user_client, f"/panel/image/{image.id}/remove")
    assert _message(response)["message"] == "specified image does not exist"


def test_change_password(user_client, db_session, user):
    response = _post(
        user_client,
        "/panel/account/passwd",
        old_password="password123",
        password="new-password",
        password_confirm="new-password",
    )
    assert _message(response)["type"] == "success"
    db_session.refresh(user)
    assert check_password("new-password", user.password_hash)


def test_change_password_mismatch(user_client):
    response = _post(
        user_client, "/panel/account/passwd", old_password="password123", password="aaaaaa", password_confirm="b"
    )
    assert _message(response)["message"] == "passwords do not match"


def test_api_keys(user_client, db_session, user):
    response = _post(user_client, "/panel/api/add", label="ci")
    assert response.status_code == 200
    created = response.json()["api_key"]
    assert len(created["api_key"]) == 128

    account = user_client.get("/panel/account").json()
    assert [key["api_id"] for key in account["api_keys"]] == [created["api_id"]]
    assert "api_key" not in account["api_keys"][0]

    _post(user_client, f"/panel/api/{created['id']}/remove")
    db_session.expire_all()
    assert db_session.scalars(select(ApiKey)).first() is None

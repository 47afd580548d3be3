"""
Tests for the account data model and validation rules
"""

from datetime import datetime, timezone

import pytest

from account_compliance.models import (
    Account, Address, AccountRelationship, AccountRelationships, AccountStatus, AccountType,
    RelationshipChange, RelationshipType, RelationshipUpdate,
    is_valid_email, is_valid_phone, is_valid_url, new_account, normalize_account_input,
    serialize_account_input, validate_account, validate_account_data,
    validate_account_update, validate_address,
)


VALID_ADDRESS = {
    "street": "1 Main St",
    "city": "Springfield",
    "state": "IL",
    "postal_code": "62701",
    "country": "US",
}


def valid_input(**overrides):
    data = {
        "name": "Acme Corp",
        "industry": "Manufacturing",
        "type": "CUSTOMER",
        "status": "ACTIVE",
    }
    data.update(overrides)
    return data


class TestFormatValidators:
    """Test email, URL and phone format rules"""

    def test_email(self):
        assert is_valid_email("a@b.com")
        assert is_valid_email("john.doe@example.co.uk")
        assert not is_valid_email("no-at-sign.com")
        assert not is_valid_email("a@b")
        assert not is_valid_email("a b@c.com")

    def test_url(self):
        assert is_valid_url("https://acme.com")
        assert is_valid_url("http://acme.com/path?q=1")
        assert not is_valid_url("acme.com")
        assert not is_valid_url("not a url")

    def test_phone(self):
        assert is_valid_phone("555-123-4567")
        assert is_valid_phone("(555) 123-4567")
        assert is_valid_phone("+44 20 7946 0958")
        assert not is_valid_phone("12345")
        assert not is_valid_phone("phone-number")


class TestValidateAccountData:
    """Test full and partial account validation"""

    def test_valid(self):
        assert validate_account_data(valid_input(
            email="a@b.com", website="https://acme.com", phone="555-123-4567",
            billing_address=VALID_ADDRESS, tags=["vip"], custom_fields={"tier": "gold"},
        )) == []

    def test_required_fields(self):
        errors = validate_account_data({})
        assert errors == [
            "Account name is required",
            "Industry is required",
            "Account type is required",
            "Account status is required",
        ]

    def test_blank_and_invalid_enum(self):
        errors = validate_account_data(valid_input(name="   ", type="VENDOR"))
        assert "Account name is required" in errors
        assert "Account type is required" in errors

    def test_enum_members_accepted(self):
        assert validate_account_data(valid_input(type=AccountType.PARTNER, status=AccountStatus.PENDING)) == []

    def test_format_errors(self):
        errors = validate_account_data(valid_input(email="bad", website="bad", phone="bad"))
        assert errors == [
            "Invalid email format",
            "Invalid website URL format",
            "Invalid phone number format",
        ]

    def test_incomplete_address(self):
        errors = validate_account_data(valid_input(billing_address={"street": "1 Main St"}))
        assert errors == [
            "billing City is required",
            "billing State is required",
            "billing Postal code is required",
            "billing Country is required",
        ]

    def test_collection_types(self):
        errors = validate_account_data(valid_input(tags="vip", custom_fields=["x"]))
        assert errors == ["Invalid tags format", "Invalid custom_fields format"]

    def test_partial_update_checks_only_present_fields(self):
        assert validate_account_update({"email": "new@b.com"}) == []
        assert validate_account_update({"name": ""}) == ["Account name is required"]
        assert validate_account_update({"status": "DELETED"}) == ["Account status is required"]

    def test_validate_address_object(self):
        assert validate_address(Address(**VALID_ADDRESS)) == []
        assert validate_address("1 Main St", "shipping") == ["shipping address must be an object"]


class TestAccount:
    """Test Account construction and serialization"""

    def test_new_account_normalizes(self):
        data = valid_input(billing_address=dict(VALID_ADDRESS), tags=("a", "b"), unknown="dropped")
        account = new_account(data, "user1", "acc-1")

        assert account.id == "acc-1"
        assert account.type is AccountType.CUSTOMER
        assert account.status is AccountStatus.ACTIVE
        assert isinstance(account.billing_address, Address)
        assert account.tags == ["a", "b"]
        assert account.custom_fields == {}
        assert account.created_by == account.updated_by == "user1"
        assert not hasattr(account, "unknown")
        assert validate_account(account) == []

    def test_normalize_does_not_mutate(self):
        data = valid_input(billing_address=dict(VALID_ADDRESS))
        normalize_account_input(data)
        assert data["type"] == "CUSTOMER"
        assert isinstance(data["billing_address"], dict)

    def test_dict_roundtrip(self):
        account = new_account(valid_input(
            email="a@b.com", shipping_address=dict(VALID_ADDRESS),
            annual_revenue=1000000.0, employee_count=50, custom_fields={"tier": "gold"},
        ), "user1", "acc-1")

        data = account.to_dict()
        assert data["type"] == "CUSTOMER"
        assert data["shipping_address"]["city"] == "Springfield"
        assert isinstance(data["created_at"], str)

        assert Account.from_dict(data) == account

    def test_serialize_account_input(self):
        result = serialize_account_input({
            "status": AccountStatus.CLOSED,
            "billing_address": Address(**VALID_ADDRESS),
            "tags": {"x"},
            "id": "forged",
            "created_by": "forged",
        })
        assert result == {
            "status": "CLOSED",
            "billing_address": VALID_ADDRESS,
            "tags": ["x"],
        }


class TestRelationshipModels:
    """Test relationship records and update batches"""

    def test_relationship_roundtrip(self):
        now = datetime.now(timezone.utc)
        relationship = AccountRelationship(
            id="rel1", created_at=now, updated_at=now,
            parent_account_id="A", child_account_id="B",
            relationship_type=RelationshipType.AFFILIATE, created_by="u1",
        )
        data = relationship.to_dict()
        assert data["relationship_type"] == "AFFILIATE"
        assert AccountRelationship.from_dict(data) == relationship

    def test_account_relationships_all(self):
        now = datetime.now(timezone.utc)
        up = AccountRelationship("r1", now, now, "P", "A", RelationshipType.PARENT_CHILD)
        down = AccountRelationship("r2", now, now, "A", "C", RelationshipType.PARENT_CHILD)
        relationships = AccountRelationships(parent_relationships=[up], child_relationships=[down])
        assert relationships.all == [up, down]
        assert relationships.to_dict()["child_relationships"][0]["child_account_id"] == "C"

    def test_edge_direction(self):
        assert RelationshipChange("T", RelationshipType.PARENT_CHILD, True).edge_for("A") == ("T", "A")
        assert RelationshipChange("T", RelationshipType.PARENT_CHILD, False).edge_for("A") == ("A", "T")

    def test_update_validation(self):
        assert RelationshipUpdate().validate() == [
            "At least one relationship operation (add or remove) must be provided"
        ]

        update = RelationshipUpdate(
            add=[RelationshipChange("", None, False)],
            remove=[" "],
        )
        assert update.validate() == [
            "Target account ID is required for relationship at index 0",
            "Relationship type is required for relationship at index 0",
            "Relationship ID is required for removal at index 0",
        ]

    def test_update_to_dict(self):
        update = RelationshipUpdate(add=[RelationshipChange("T", RelationshipType.SUBSIDIARY, True)], remove=["r1"])
        assert update.to_dict() == {
            "add": [{"target_account_id": "T", "relationship_type": "SUBSIDIARY", "is_parent": True}],
            "remove": ["r1"],
        }

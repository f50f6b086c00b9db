import pytest

from entitlements.billing.customers import choose_canonical, cleanup_duplicate_customers
from entitlements.errors import AccountNotFound


def _customer(customer_id, created, owner=None, **extra):
    return {
        "id": customer_id,
        "created": created,
        "metadata": {"userId": owner} if owner else {},
        **extra,
    }


def test_stored_link_is_canonical(make_user):
    user = make_user(external_customer_id="cus_b")
    customers = [_customer("cus_a", 1), _customer("cus_b", 2)]

    assert choose_canonical(customers, user)["id"] == "cus_b"


def test_tagged_customer_beats_older_untagged(make_user):
    user = make_user()
    customers = [_customer("cus_a", 1), _customer("cus_b", 2, owner=user.id), _customer("cus_c", 3, owner=user.id)]

    assert choose_canonical(customers, user)["id"] == "cus_b"


def test_oldest_customer_when_nothing_is_tagged(make_user):
    user = make_user()

    assert choose_canonical([_customer("cus_new", 9), _customer("cus_old", 3)], user)["id"] == "cus_old"
    assert choose_canonical([], user) is None


def test_duplicates_are_merged_onto_canonical(manager, provider, make_user):
    user = make_user(external_customer_id="cus_b")
    provider.list_customers_by_email.return_value = [
        _customer("cus_a", 1, owner=user.id),
        _customer("cus_b", 2),
        _customer("cus_someone_else", 3, owner="another-user"),
        _customer("cus_deleted", 4, deleted=True),
    ]

    result = cleanup_duplicate_customers(user.id, manager=manager)

    provider.list_customers_by_email.assert_called_once_with(user.email)
    provider.mark_customer_merged.assert_called_once_with("cus_a", "cus_b")
    assert result.to_dict() == {
        "userId": user.id,
        "canonicalCustomerId": "cus_b",
        "mergedCustomerIds": ["cus_a"],
        "errors": [],
    }
    assert user.external_customer_id == "cus_b"


def test_duplicate_with_live_subscription_is_left_alone(manager, provider, make_user):
    user = make_user(external_customer_id="cus_b")
    provider.list_customers_by_email.return_value = [_customer("cus_a", 1, owner=user.id), _customer("cus_b", 2)]
    provider.list_subscriptions.return_value = [{"id": "sub_x", "status": "active"}]

    result = cleanup_duplicate_customers(user.id, manager=manager)

    provider.mark_customer_merged.assert_not_called()
    assert result.merged_customer_ids == []
    assert "cus_a" in result.errors[0]
    assert result.had_duplicates


def test_unlinked_account_gets_linked_to_canonical(manager, provider, make_user):
    user = make_user()
    provider.list_customers_by_email.return_value = [_customer("cus_only", 5, owner=user.id)]

    result = cleanup_duplicate_customers(user.id, manager=manager)

    assert result.canonical_customer_id == "cus_only"
    assert not result.had_duplicates
    assert user.external_customer_id == "cus_only"


def test_unknown_account(manager):
    with pytest.raises(AccountNotFound):
        cleanup_duplicate_customers("missing", manager=manager)


def test_untagged_customer_sharing_the_email_is_left_alone(manager, provider, make_user):
    user = make_user(external_customer_id="cus_mine")
    provider.list_customers_by_email.return_value = [
        _customer("cus_mine", 2),
        _customer("cus_stranger", 1),
    ]

    result = cleanup_duplicate_customers(user.id, manager=manager)

    provider.mark_customer_merged.assert_not_called()
    provider.list_subscriptions.assert_not_called()
    assert result.canonical_customer_id == "cus_mine"
    assert not result.had_duplicates

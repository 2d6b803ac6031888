import pytest

from dependencies.rbac import has_permission, normalize_path, translate_method_to_action


class TestNormalizePath:
    @pytest.mark.parametrize(
        "path, resource",
        [
            ("/cart", "cart"),
            ("/cart/items/4f6c", "cart"),
            ("/orders/checkout", "orders"),
            ("/orders/vendor", "orders/vendor"),
            ("/orders/available", "orders/available"),
            ("/orders/4f6c/status", "orders/status"),
            ("/orders/4f6c/payments", "orders/payments"),
            ("/admin/users/4f6c", "admin/users"),
            ("/admin/outbox/publish", "admin/outbox"),
            ("/", ""),
        ],
    )
    def test_paths(self, path, resource):
        assert normalize_path(path) == resource


class TestPermissions:
    def test_method_mapping(self):
        assert translate_method_to_action("get") == "read"
        assert translate_method_to_action("PATCH") == "write"
        assert translate_method_to_action("DELETE") == "delete"

    def test_customer(self):
        assert has_permission("customer", "cart", "write")
        assert has_permission("customer", "orders", "write")
        assert not has_permission("customer", "orders/status", "write")
        assert not has_permission("customer", "admin/users", "delete")

    def test_driver(self):
        assert has_permission("driver", "orders/available", "read")
        assert has_permission("driver", "orders/status", "write")
        assert not has_permission("driver", "cart", "write")
        assert not has_permission("driver", "orders", "write")

    def test_admin(self):
        assert has_permission("admin", "admin/users", "delete")
        assert has_permission("admin", "orders/payments", "write")
        assert not has_permission("admin", "cart", "write")

    def test_unknown_role(self):
        assert not has_permission("supplier", "orders", "read")

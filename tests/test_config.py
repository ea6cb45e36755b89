import logging

from storefront.config import Settings, WEBHOOK_PATH
from storefront.logs import configure_logging


def test_defaults():
    s = Settings.from_env({})
    assert s.database_url == "sqlite:///./storefront.db"
    assert s.payment_backend == "sql"
    assert s.payment_provider == "xendit"
    assert s.xendit_secret_key is None
    assert s.xendit_callback_token is None
    assert s.shipping_cost == 25000
    assert s.currency == "IDR"
    assert s.mock_webhook_url == f"http://localhost:8000{WEBHOOK_PATH}"


def test_from_env():
    s = Settings.from_env({
        "DATABASE_URL": "postgresql://u:p@db/shop",
        "PAYMENT_BACKEND": "Redis",
        "PAYMENT_PROVIDER": "MOCK",
        "XENDIT_SECRET_KEY": "xnd_development_abc",
        "XENDIT_CALLBACK_TOKEN": "cb-token",
        "SHIPPING_COST": "15000",
        "DB_GATE_LIMIT": "4",
        "PUBLIC_BASE_URL": "https://shop.example/",
        "WEBHOOK_URL": "https://hooks.example/xendit",
        "LOG_LEVEL": "debug",
    })
    assert s.database_url == "postgresql://u:p@db/shop"
    assert s.payment_backend == "redis"
    assert s.payment_provider == "mock"
    assert s.xendit_secret_key == "xnd_development_abc"
    assert s.shipping_cost == 15000
    assert s.db_gate_limit == 4
    assert s.success_redirect_url == "https://shop.example/success"
    assert s.mock_webhook_url == "https://hooks.example/xendit"
    assert s.log_level == "DEBUG"


def test_blank_secrets_count_as_unset():
    s = Settings.from_env({"XENDIT_SECRET_KEY": "  ",
                           "XENDIT_CALLBACK_TOKEN": ""})
    assert s.xendit_secret_key is None
    assert s.xendit_callback_token is None


def test_secrets_stay_out_of_repr():
    s = Settings(xendit_secret_key="xnd_secret", xendit_callback_token="cb")
    assert "xnd_secret" not in repr(s)


def test_configure_logging():
    configure_logging("WARNING")
    assert logging.getLogger("storefront").level == logging.WARNING
    configure_logging("DEBUG")
    assert logging.getLogger("storefront.reconcile").getEffectiveLevel() == (
        logging.DEBUG
    )


def test_uvicorn_lines_print_once():
    configure_logging("INFO")
    error = logging.getLogger("uvicorn.error")
    access = logging.getLogger("uvicorn.access")
    # uvicorn.error reaches the console only through its parent
    assert error.handlers == []
    assert error.propagate
    assert len(logging.getLogger("uvicorn").handlers) == 1
    assert len(access.handlers) == 1
    assert not access.propagate

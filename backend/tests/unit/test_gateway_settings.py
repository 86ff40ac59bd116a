from trafikskola.core.config import Settings
from trafikskola.models.site_setting import SiteSetting
from trafikskola.services.gateway_settings import (
    GatewaySettingsProvider,
    build_gateway_settings,
    load_gateway_settings,
)

ENV = Settings(
    qliro_enabled=True,
    qliro_api_key="env-key",
    qliro_api_secret="env-secret",
    public_url="https://env.example/",
)


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def test_environment_fills_missing_rows():
    gateway = build_gateway_settings({}, config=ENV)

    assert gateway.enabled is True
    assert gateway.api_key == "env-key"
    assert gateway.api_secret == "env-secret"
    assert gateway.environment == "sandbox"
    assert gateway.api_url == "https://pago.qit.nu"
    assert gateway.public_url == "https://env.example"


def test_rows_override_environment():
    gateway = build_gateway_settings(
        {
            "qliro_enabled": "false",
            "qliro_api_key": "row-key",
            "qliro_environment": "production",
            "qliro_prod_api_url": "https://prod.qliro.example/",
            "qliro_payment_methods_exclude": "INVOICE, ",
        },
        config=ENV,
    )

    assert gateway.enabled is False
    assert gateway.api_key == "row-key"
    assert gateway.api_url == "https://prod.qliro.example"
    assert gateway.payment_methods_exclude == ("INVOICE",)


def test_unknown_environment_falls_back_to_sandbox():
    gateway = build_gateway_settings({"qliro_environment": "staging"}, config=ENV)
    assert gateway.environment == "sandbox"
    assert gateway.api_url == ENV.qliro_sandbox_url


def test_loads_payment_category_from_database(db):
    db.add_all(
        [
            SiteSetting(key="qliro_api_key", value="db-key", category="payment"),
            SiteSetting(key="site_name", value="Trafikskolan", category="general"),
        ]
    )
    db.commit()

    assert load_gateway_settings(db).api_key == "db-key"


class TestProvider:
    def test_caches_until_ttl_expires(self):
        clock = FakeClock()
        loads = []

        def loader():
            loads.append(clock.now)
            return build_gateway_settings({}, config=ENV)

        provider = GatewaySettingsProvider(loader, ttl_seconds=60, clock=clock)

        first = provider.get()
        clock.now += 59
        assert provider.get() is first
        assert len(loads) == 1

        clock.now += 1
        provider.get()
        assert len(loads) == 2

    def test_invalidate_forces_reload(self):
        keys = iter(["first", "second"])
        provider = GatewaySettingsProvider(
            lambda: build_gateway_settings({"qliro_api_key": next(keys)}, config=ENV),
            clock=FakeClock(),
        )

        assert provider.get().api_key == "first"
        assert provider.get().api_key == "first"
        provider.invalidate()
        assert provider.get().api_key == "second"

    def test_from_session_factory_reads_fresh_session(self, session_factory):
        setup = session_factory()
        setup.add(SiteSetting(key="qliro_enabled", value="true", category="payment"))
        setup.commit()
        setup.close()

        provider = GatewaySettingsProvider.from_session_factory(session_factory, ttl_seconds=0)

        assert provider.get().enabled is True

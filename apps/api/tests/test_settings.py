import pytest
from pydantic import ValidationError

from mysterybox_api.core.settings import Settings


def test_tier_prices_from_pair_list(monkeypatch) -> None:
    monkeypatch.setenv("BOX_TIER_PRICES", "1:1, 2:4,5:10")

    assert Settings().box_tier_prices == {1: 1, 2: 4, 5: 10}


def test_tier_prices_from_json(monkeypatch) -> None:
    monkeypatch.setenv("BOX_TIER_PRICES", '{"1": 2, "3": 6}')

    assert Settings().box_tier_prices == {1: 2, 3: 6}


@pytest.mark.parametrize("raw", ["0:1", "1:0", "2:-3"])
def test_tier_prices_must_be_positive(monkeypatch, raw) -> None:
    monkeypatch.setenv("BOX_TIER_PRICES", raw)

    with pytest.raises(ValidationError):
        Settings()


def test_defaults_keep_box_economy_conservative(monkeypatch) -> None:
    monkeypatch.delenv("BOX_TIER_PRICES", raising=False)

    configured = Settings()

    assert configured.box_tier_prices == {1: 1, 2: 2, 3: 3}
    assert configured.box_retention_days == 7
    assert configured.box_cash_reward_auto_credit is False
    assert configured.box_expiry_worker_enabled is False


@pytest.mark.parametrize(
    ("environment", "expected_reload"),
    [("development", True), ("staging", False), ("production", False)],
)
def test_entry_point_reloads_only_in_development(monkeypatch, environment, expected_reload) -> None:
    import mysterybox_api.__main__ as entry_point

    calls: list[dict] = []
    monkeypatch.setattr(entry_point.settings, "environment", environment)
    monkeypatch.setattr(entry_point.uvicorn, "run", lambda app, **kwargs: calls.append({"app": app, **kwargs}))

    entry_point.main()

    assert calls == [
        {"app": "mysterybox_api.app:create_app", "factory": True, "reload": expected_reload}
    ]

import pytest
from reservation_engine.database import lock_timeout_connect_args


@pytest.mark.parametrize(
    "url, timeout, expected",
    [
        (
            "mysql+aiomysql://app:pw@127.0.0.1:3306/reservation",
            2.0,
            {"init_command": "SET SESSION innodb_lock_wait_timeout = 2"},
        ),
        (
            "mysql+aiomysql://app:pw@127.0.0.1:3306/reservation",
            0.2,
            {"init_command": "SET SESSION innodb_lock_wait_timeout = 1"},
        ),
        (
            "postgresql+asyncpg://app:pw@localhost/reservation",
            2.5,
            {"server_settings": {"lock_timeout": "2500"}},
        ),
        (
            "postgresql+psycopg://app:pw@localhost/reservation",
            1.0,
            {"options": "-c lock_timeout=1000"},
        ),
        ("sqlite+aiosqlite:///reservation.db", 2.0, {"timeout": 2.0}),
    ],
)
def test_lock_timeout_follows_ledger_setting(url: str, timeout: float, expected: dict) -> None:
    assert lock_timeout_connect_args(url, timeout) == expected

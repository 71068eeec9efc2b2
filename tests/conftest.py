"""Shared fixtures: settings, an in-memory database and seeding helpers."""

import logging
from decimal import Decimal

import pytest

from venuschat.cache import InMemoryContextCache
from venuschat.config.settings import (
    CacheSettings,
    ChatSettings,
    DatabaseSettings,
    LLMSettings,
    SearchSettings,
    Settings,
)
from venuschat.db.models import (
    Conversation,
    DiscoveredModel,
    PricingRule,
    Provider,
    ProviderStatus,
    UserBilling,
)
from venuschat.db.session import Database, create_db_engine


@pytest.fixture
def settings():
    """Settings isolated from any .env file in the working directory."""
    return Settings(
        _env_file=None,
        llm=LLMSettings(
            provider="deepseek",
            model="deepseek-chat",
            api_key="test-preset-key",
            base_url="https://api.deepseek.com",
        ),
        chat=ChatSettings(
            max_steps=5,
            lightweight_max_steps=1,
            stream_timeout_seconds=5.0,
            image_timeout_seconds=1.0,
            compression_threshold=32000,
            keep_last_messages=10,
        ),
        database=DatabaseSettings(url="sqlite://"),
        cache=CacheSettings(redis_url=""),
        search=SearchSettings(serpapi_api_key="test-serp-key"),
    )


@pytest.fixture
def db():
    """Fresh in-memory SQLite database with the full schema."""
    database = Database(create_db_engine("sqlite://"))
    database.create_all()
    yield database
    database.dispose()


@pytest.fixture
def cache():
    return InMemoryContextCache(ttl_seconds=60)


# ---------------------------------------------------------------------------
# Seeding helpers
# ---------------------------------------------------------------------------

@pytest.fixture
def add_conversation(db):
    def _add(user_id: str = "user-1", title: str = "New Chat", is_deleted: bool = False) -> str:
        with db.session() as session, session.begin():
            conversation = Conversation(user_id=user_id, title=title, is_deleted=is_deleted)
            session.add(conversation)
            session.flush()
            return conversation.id

    return _add


@pytest.fixture
def add_user_model(db):
    def _add(
        user_id: str = "user-1",
        provider: str = "openai",
        model_id: str = "gpt-4o",
        api_key: str = "sk-user",
        status: str = ProviderStatus.ACTIVE.value,
        is_enabled: bool = True,
    ) -> str:
        with db.session() as session, session.begin():
            row = Provider(user_id=user_id, name=provider, api_key=api_key, status=status)
            row.models = [DiscoveredModel(model_id=model_id, display_name=model_id, is_enabled=is_enabled)]
            session.add(row)
            session.flush()
            return row.models[0].id

    return _add


@pytest.fixture
def add_pricing(db):
    def _add(provider: str = "openai", model_name: str = "gpt-4o", input_price: str = "0.03", output_price: str = "0.06"):
        with db.session() as session, session.begin():
            session.add(
                PricingRule(
                    provider=provider,
                    model_name=model_name,
                    input_token_price=Decimal(input_price),
                    output_token_price=Decimal(output_price),
                )
            )

    return _add


@pytest.fixture
def set_billing(db):
    def _set(user_id: str = "user-1", credits: str = "10", monthly_limit: str | None = "100", daily_limit: str | None = "10",
             current_month_spent: str = "0", current_day_spent: str = "0"):
        with db.session() as session, session.begin():
            session.add(
                UserBilling(
                    user_id=user_id,
                    credits=Decimal(credits),
                    monthly_limit=Decimal(monthly_limit) if monthly_limit is not None else None,
                    daily_limit=Decimal(daily_limit) if daily_limit is not None else None,
                    current_month_spent=Decimal(current_month_spent),
                    current_day_spent=Decimal(current_day_spent),
                )
            )

    return _set


@pytest.fixture(autouse=True)
def reset_logging():
    """Drop handlers installed by setup_logging() so they never outlive a test's captured stdout."""
    yield
    root = logging.getLogger("venuschat")
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()

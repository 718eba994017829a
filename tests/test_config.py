import pytest
from pydantic import ValidationError as PydanticValidationError

from idwarden.config import Settings, get_settings, reset_settings_cache


class TestSettingsFromEnv:
    def test_env_names_map_to_fields(self, monkeypatch):
        monkeypatch.setenv("ACCESS_TOKEN_TTL_MINUTES", "30")
        monkeypatch.setenv("SYSTEM_ROLES", "admin, auditor ,")
        monkeypatch.setenv("DEFAULT_ROLE", " member ")

        settings = Settings.from_env()

        assert settings.access_token_ttl_minutes == 30
        assert settings.system_role_names == ["ADMIN", "AUDITOR"]
        assert settings.default_role_name == "MEMBER"

    def test_blank_values_become_none(self, monkeypatch):
        monkeypatch.setenv("REDIS_URL", "  ")
        monkeypatch.setenv("DEFAULT_ROLE", "")

        settings = Settings.from_env()

        assert settings.redis_url is None
        assert settings.default_role_name is None

    def test_settings_cache_reset(self, monkeypatch):
        reset_settings_cache()
        first = get_settings()
        assert get_settings() is first
        reset_settings_cache()
        assert get_settings() is not first
        reset_settings_cache()


class TestValidation:
    def test_country_code_normalized(self):
        assert Settings(jwt_secret="s" * 40, default_phone_country_code="+44").default_phone_country_code == "44"

    @pytest.mark.parametrize("value", ["0", "1234", "x1"])
    def test_country_code_rejected(self, value):
        with pytest.raises(PydanticValidationError):
            Settings(jwt_secret="s" * 40, default_phone_country_code=value)

    def test_code_length_bounds(self):
        with pytest.raises(PydanticValidationError):
            Settings(jwt_secret="s" * 40, challenge_code_length=3)

    def test_refresh_digest_key_defaults_to_jwt_secret(self):
        settings = Settings(jwt_secret="s" * 40)
        assert settings.refresh_digest_key == "s" * 40
        assert Settings(jwt_secret="s" * 40, refresh_token_pepper="p" * 40).refresh_digest_key == "p" * 40


class TestJwtSecretPersistence:
    def test_generated_secret_is_reused(self, monkeypatch, tmp_path):
        monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path))

        first = Settings(jwt_secret=None)
        second = Settings(jwt_secret=None)

        assert len(first.jwt_secret) >= 32
        assert first.jwt_secret == second.jwt_secret
        assert (tmp_path / ".jwt_secret").read_text() == first.jwt_secret

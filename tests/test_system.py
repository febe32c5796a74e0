import os

from screening.config import Settings
from screening.system import ScreeningSystem


def test_system_initializes_database(tmp_path):
    settings = Settings(database_path=str(tmp_path / "nested" / "screening.db"), app_env="test")
    system = ScreeningSystem(settings)

    assert os.path.exists(settings.database_path)
    assert "interview_schedules" in system.db._columns
    assert system.dispatcher.webhook_url == settings.webhook_url

    system.close()
    system.close()


def test_settings_environment_flags():
    assert Settings(app_env="production").is_production
    assert Settings(app_env="development").is_development
    assert not Settings(app_env="test").is_production

import pytest

from kontrol._cogs.configs.configuration import OperatorSettings
from kontrol._cogs.configs.loading import SettingsError, apply_settings, load_settings


def test_defaults_are_kept_for_an_empty_file(tmp_path):
    path = tmp_path / 'settings.yaml'
    path.write_text('')
    settings = load_settings(path)
    assert settings == OperatorSettings()


def test_mentioned_settings_are_overridden(tmp_path):
    path = tmp_path / 'settings.yaml'
    path.write_text(
        'watching:\n'
        '  reconnect_backoff: 0.5\n'
        '  error_delays: [1, 2, 3]\n'
        'queueing:\n'
        '  max_retries: 5\n'
        'workers:\n'
        '  count: 4\n'
    )
    settings = load_settings(path)
    assert settings.watching.reconnect_backoff == 0.5
    assert settings.watching.error_delays == (1, 2, 3)
    assert settings.queueing.max_retries == 5
    assert settings.workers.count == 4
    assert settings.queueing.base_delay == OperatorSettings().queueing.base_delay


def test_existing_settings_are_updated_in_place(tmp_path):
    path = tmp_path / 'settings.yaml'
    path.write_text('reconciling:\n  finalizer: example.com/finalizer\n')
    settings = OperatorSettings()
    settings.workers.count = 3
    result = load_settings(path, settings=settings)
    assert result is settings
    assert settings.reconciling.finalizer == 'example.com/finalizer'
    assert settings.workers.count == 3


@pytest.mark.parametrize('data, message', [
    (['a', 'b'], r"must be a mapping, got list"),
    ({'unknown': {}}, r"Unknown settings group: 'unknown'"),
    ({'workers': 5}, r"The settings group 'workers' must be a mapping"),
    ({'workers': {'threads': 5}}, r"Unknown setting: workers.threads"),
])
def test_malformed_settings_are_rejected(data, message):
    with pytest.raises(SettingsError, match=message):
        apply_settings(OperatorSettings(), data)


def test_malformed_files_are_rejected(tmp_path):
    path = tmp_path / 'settings.yaml'
    path.write_text('- a\n- b\n')
    with pytest.raises(SettingsError):
        load_settings(path)

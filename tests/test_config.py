import pytest
import yaml

from spmirror.config import EngineConfig, get_config_file_path
from spmirror.constants import DEFAULT_REFERENCE_URL, FALLBACK_REFERENCE_URL
from spmirror.exceptions import ConfigFileError, ConfigValidationError

pytestmark = [pytest.mark.unit]


def test_defaults():
    config = EngineConfig()
    assert config.reference_url == DEFAULT_REFERENCE_URL
    assert config.fallback_reference_url == FALLBACK_REFERENCE_URL
    assert config.uses_default_reference
    assert config.bitness == 64
    assert config.cache_dir


def test_reference_url_trailing_slash_is_dropped():
    config = EngineConfig(reference_url=DEFAULT_REFERENCE_URL + "/")
    assert config.uses_default_reference


def test_missing_file_gives_defaults(tmp_path):
    config = EngineConfig.load(str(tmp_path / "absent.yaml"))
    assert config == EngineConfig()


def test_save_and_load(tmp_path):
    path = str(tmp_path / "nested" / "spmirror.yaml")
    EngineConfig(
        reference_url="https://mirror.local/ref",
        request_timeout=15,
        current_os="win11:23H2",
        cache_dir=str(tmp_path / "cache"),
    ).save(path)

    loaded = EngineConfig.load(path)

    assert loaded.reference_url == "https://mirror.local/ref"
    assert not loaded.uses_default_reference
    assert loaded.request_timeout == 15.0
    assert loaded.current_os == "win11:23H2"


def test_keys_are_upper_case_and_unknown_keys_ignored(tmp_path):
    path = tmp_path / "spmirror.yaml"
    path.write_text(
        yaml.safe_dump({"BITNESS": "32", "LOG_LEVEL": "DEBUG", "SOMETHING_NEW": 1}),
        encoding="utf-8",
    )

    config = EngineConfig.load(str(path))

    assert config.bitness == 32
    assert config.log_level == "DEBUG"


@pytest.mark.parametrize(
    "document",
    ["CONNECT_RETRIES: many\n", "REQUEST_TIMEOUT: [1, 2]\n", "BITNESS: true\n"],
)
def test_invalid_values(tmp_path, document):
    path = tmp_path / "spmirror.yaml"
    path.write_text(document, encoding="utf-8")
    with pytest.raises(ConfigValidationError):
        EngineConfig.load(str(path))


def test_document_must_be_a_mapping(tmp_path):
    path = tmp_path / "spmirror.yaml"
    path.write_text("- one\n- two\n", encoding="utf-8")
    with pytest.raises(ConfigValidationError):
        EngineConfig.load(str(path))


def test_unparseable_yaml(tmp_path):
    path = tmp_path / "spmirror.yaml"
    path.write_text("REFERENCE_URL: [unclosed\n", encoding="utf-8")
    with pytest.raises(ConfigFileError):
        EngineConfig.load(str(path))


def test_default_path_is_in_user_config_dir():
    assert get_config_file_path().endswith("spmirror.yaml")

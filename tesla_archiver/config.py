import os
import configparser
from dataclasses import dataclass

from tesla_archiver.errors import ConfigError

DEFAULT_CONFIG_FILE = "/etc/tesla-usb/tesla-archive.cfg"
CONFIG_ENV = "TESLA_ARCHIVE_CONFIG"
SECTION = "settings"


@dataclass(frozen=True)
class Settings:
    """Immutable run configuration, handed to every component at construction."""
    vg_name: str = "tesla_vg"
    lv_name: str = "tesla_usb"
    snap_name: str = "tesla_snap"
    snap_size: str = "3G"
    snap_mount: str = "/mnt/tesla_snap"
    archive_dir: str = "/mnt/tesla_archive"
    source_subdir: str = "TeslaCam"
    file_pattern: str = "*.mp4"
    db_path: str = ""
    log_file: str = ""
    lock_file: str = "/var/lock/teslacam_archive.lock"
    min_free_pct: int = 10
    batch_size: int = 50
    eviction_batch: int = 100
    eviction_recheck: int = 5
    index_retention_months: int = 6
    backup_retention_days: int = 30
    max_disk_temp: int = 100
    use_sudo: bool = False

    def __post_init__(self):
        # db and log live inside the archive unless placed elsewhere
        if not self.db_path:
            object.__setattr__(self, "db_path", os.path.join(self.archive_dir, ".file_index.sqlite"))
        if not self.log_file:
            object.__setattr__(self, "log_file", os.path.join(self.archive_dir, "archive.log"))

    @property
    def source_device(self):
        return f"/dev/{self.vg_name}/{self.lv_name}"


INT_KEYS = (
    "min_free_pct", "batch_size", "eviction_batch", "eviction_recheck",
    "index_retention_months", "backup_retention_days", "max_disk_temp",
)
BOOL_KEYS = ("use_sudo",)
STR_KEYS = (
    "vg_name", "lv_name", "snap_name", "snap_size", "snap_mount", "archive_dir",
    "source_subdir", "file_pattern", "db_path", "log_file", "lock_file",
)


def resolve_config_path(cli_path=None):
    return cli_path or os.environ.get(CONFIG_ENV) or DEFAULT_CONFIG_FILE


def load_settings(config_path=None):
    """
    Builds Settings from defaults overlaid with the [settings] section of the
    INI file. A missing file is not an error; a bad value is.
    """
    path = resolve_config_path(config_path)
    parser = configparser.ConfigParser()

    if os.path.exists(path):
        try:
            parser.read(path)
        except configparser.Error as e:
            raise ConfigError(f"Cannot parse {path}: {e}") from e

    if not parser.has_section(SECTION):
        return Settings()

    section = parser[SECTION]
    values = {}

    unknown = set(section.keys()) - set(INT_KEYS + BOOL_KEYS + STR_KEYS)
    if unknown:
        raise ConfigError(f"Unknown key(s) in {path}: {', '.join(sorted(unknown))}")

    for key in STR_KEYS:
        if key in section:
            values[key] = section[key].strip()

    for key in INT_KEYS:
        if key in section:
            try:
                values[key] = section.getint(key)
            except ValueError as e:
                raise ConfigError(f"{key} must be an integer in {path}") from e

    for key in BOOL_KEYS:
        if key in section:
            try:
                values[key] = section.getboolean(key)
            except ValueError as e:
                raise ConfigError(f"{key} must be true/false in {path}") from e

    settings = Settings(**values)
    validate(settings)
    return settings


def validate(settings):
    if not 0 <= settings.min_free_pct <= 100:
        raise ConfigError("min_free_pct must be between 0 and 100")
    for key in ("batch_size", "eviction_batch", "eviction_recheck"):
        if getattr(settings, key) < 1:
            raise ConfigError(f"{key} must be at least 1")
    if settings.index_retention_months < 1:
        raise ConfigError("index_retention_months must be at least 1")

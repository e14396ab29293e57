from rollarr.models.config import Config
from rollarr.models.sonarr_instance import SonarrInstance
from rollarr.models.rolling_monitored_show import RollingMonitoredShow, utcnow

__all__ = [
    "Config",
    "SonarrInstance",
    "RollingMonitoredShow",
    "utcnow",
]

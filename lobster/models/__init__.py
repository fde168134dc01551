from lobster.models.action_log import ActionLog  # noqa: F401
from lobster.models.antiflood import AntifloodEntry  # noqa: F401
from lobster.models.auth import ApiKey, FormToken, PasswordResetToken, WebSession  # noqa: F401
from lobster.models.billing import Charge, RegionBandwidth, Transaction  # noqa: F401
from lobster.models.image import Image, ImageStatus  # noqa: F401
from lobster.models.plan import Plan, RegionPlan  # noqa: F401
from lobster.models.region import Region  # noqa: F401
from lobster.models.user import User, UserStatus  # noqa: F401
from lobster.models.vm import SuspendState, VirtualMachine, VmMetadata, VmStatus  # noqa: F401

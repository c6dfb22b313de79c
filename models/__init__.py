from .decision import Decision, DecisionOption  # noqa: F401
from .share_token import ShareToken  # noqa: F401
from .access_log import AccessLog  # noqa: F401
from .activity import Activity, DecisionComment  # noqa: F401

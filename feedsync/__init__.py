from .errors import AuthRequired, FeedError, NotFound, RemoteUnavailable, ValidationFailed
from .feed import FeedCache, VideoState
from .gateway import GatewayError, HttpGateway, RemoteGateway
from .models import Comment, Kind, Like, User, Video

__version__ = "0.1.0"

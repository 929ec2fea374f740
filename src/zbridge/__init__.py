"""An OpenAI chat completions compatible proxy for the z.ai chat backend."""

__version__ = "0.1.0"

from .config import load_config, load_settings
from .errors import ProxyError, UpstreamError, UpstreamTimeoutError
from .intent import IntentClassifier
from .transform import ContentTagTransformer
from .streaming import SsePipeline
from .assembler import ResponseAssembler
from .auth import AuthTokenCache
from .upstream import UpstreamClient, UpstreamRequestBuilder

from .tenant import PricingPlan, Store
from .chat_session import ChatSession
from .message import Message, MessageRole
from .knowledge import FaqCategory, FaqEntry, Product
from .missing_demand import MissingDemand, MissingDemandType
from .usage import UsageMetric

# Package init for eventlens.models
from .discount import DiscountCode as DiscountCode
from .discount import DiscountCodeUsage as DiscountCodeUsage
from .event import Event as Event
from .event import Guest as Guest
from .event import Photo as Photo
from .event import PhotoLike as PhotoLike
from .logging import AppErrorLog as AppErrorLog
from .logging import AuditLog as AuditLog
from .overlay import Overlay as Overlay
from .payment import Payment as Payment
from .payment import PaymentLog as PaymentLog
from .plan import PricingPlan as PricingPlan
from .user import Base as Base  # explicit re-export
from .user import User as User

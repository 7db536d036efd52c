from studyhall.models.venue import Venue, Resource
from studyhall.models.reservation import Reservation
from studyhall.models.transaction import PaymentTransaction
from studyhall.models.booking_event import BookingEvent

__all__ = ["Venue", "Resource", "Reservation", "PaymentTransaction", "BookingEvent"]

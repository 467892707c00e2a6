from .pharmacy import Pharmacy, Medication
from .prescriptions import Prescription
from .orders import Order, OrderLine, OrderNote

__all__ = [
    'Pharmacy', 'Medication',
    'Prescription',
    'Order', 'OrderLine', 'OrderNote',
]

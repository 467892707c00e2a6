# Overview: Flask extension instances for database, migrations and the payment gateway.

from flask_sqlalchemy import SQLAlchemy
from flask_migrate import Migrate

from .services.mercado_pago import MercadoPagoClient

db = SQLAlchemy()
migrate = Migrate()
mercado_pago = MercadoPagoClient()

# backend/wsgi.py
# FLASK_APP target: python -m flask --app wsgi.py run
from farmapos import create_app

app = create_app()

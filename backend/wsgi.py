# Overview: WSGI entry point (FLASK_APP=wsgi.py).

from keyledger import create_app

app = create_app()

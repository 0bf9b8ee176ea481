# module epicerie.app
from epicerie.app_setup.factory import create_app

# App globale
app = create_app()

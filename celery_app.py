from handoff import create_app
from handoff.celery_app import create_celery_app

flask_app = create_app()
celery = create_celery_app(flask_app)

# Worker: celery -A celery_app:celery worker -l info
# Beat:   celery -A celery_app:celery beat -l info

import multiprocessing
import os

# Gunicorn settings for `gunicorn -c gunicorn_config.py wsgi:app`
bind = os.environ.get('BIND', '0.0.0.0:8000')

# Open bills travel in the signed session cookie, so any worker can serve
# any cashier; scale workers freely.
workers = int(os.environ.get('WEB_CONCURRENCY', multiprocessing.cpu_count() * 2 + 1))
threads = 2
worker_class = 'gthread'

# Must stay above INVOICE_API_TIMEOUT
timeout = int(os.environ.get('GUNICORN_TIMEOUT', '60'))
keepalive = 5

accesslog = '-'
errorlog = '-'
loglevel = 'info'
capture_output = True

from .base import *

DEBUG = False

SECRET_KEY = 'test-secret-key'

DATABASES = {
    'default': {
        'ENGINE': 'django.db.backends.sqlite3',
        'NAME': ':memory:',
    }
}

ALLOWED_HOSTS = ['testserver']

STOREFRONT_URL = 'https://shop.test'

PHONEPE = {
    **PHONEPE,
    'ENV': 'sandbox',
    'VERIFY_BASE_DELAY': 0,
    'VERIFY_MAX_DELAY': 0,
}

import pickle

import yaml


def load_session(blob):
    # Intentional vulnerability: session blobs come from a cookie.
    return pickle.loads(blob)


def load_settings(text):
    return yaml.load(text)


def calculate(expression):
    return eval(expression)

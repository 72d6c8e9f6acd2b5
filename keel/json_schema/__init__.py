"""
Draft 3 JSON schemas (http://tools.ietf.org/html/draft-zyp-json-schema-03)
of the configuration keel is started with.
"""
import functools

from jsonschema import Draft3Validator, FormatChecker, validate

format_checker = FormatChecker()

validate = functools.partial(validate, cls=Draft3Validator,
                             format_checker=format_checker)

import os
from setuptools import setup

NAME = 'keel'


def getPackages(base):
    """
    Recursively find python packages.
    """
    packages = []

    for directory, _, files in os.walk(base):
        if '__init__.py' in files:
            packages.append(directory.replace(os.sep, '.'))

    return packages

packages = getPackages(NAME)


# If a twisted/plugins directory exists make sure we install the
# twisted.plugins packages.
if os.path.exists('twisted/plugins'):
    packages.append('twisted.plugins')


setup(
    name=NAME,
    version='0.0.0',
    packages=packages,
    license="Apache 2.0",
    python_requires='>=3.6',
    install_requires=[
        'attrs',
        'constantly',
        'effect',
        'jsonschema',
        'kazoo',
        'pyrsistent',
        'toolz',
        'Twisted',
        'txeffect',
        'txkazoo',
        'zope.interface',
    ],
    extras_require={
        'test': ['mock', 'pytest', 'testtools'],
    },
)

# Make Twisted regenerate the dropin.cache, if possible.  This is necessary
# because in a site-wide install, dropin.cache cannot be rewritten by
# normal users.
try:
    from twisted.plugin import IPlugin, getPlugins
except ImportError:
    pass
else:
    list(getPlugins(IPlugin))

"""
Packaging for the HTTP to TCP bridge.

Install for development with `pip install -e .[test]` and run the tests with `pytest src`.
"""

from setuptools import setup

setup(
    name='tcpbridge',
    version='0.1.0',
    description='Sends HTTP requests as commands to TCP peers over pooled connections.',
    url='',
    author='',
    author_email='',
    license='LGPL',
    package_dir={'': 'src'},
    packages=['tcpbridge', 'tcpbridge.config', 'tcpbridge.connector', 'tcpbridge.protocol',
              'tcpbridge.support'],
    package_data={'tcpbridge.config': ['*.cfg']},
    python_requires='>=3.8',
    install_requires=[
        'configobj>=5.0.6',
        'fastapi>=0.100',
        'pydantic>=2',
        'uvicorn>=0.20',
    ],
    extras_require={
        'test': [
            'pytest',
            'PyHamcrest',
            'timeout-decorator',
            'httpx',
        ],
    },
    entry_points={
        'console_scripts': ['tcpbridge=tcpbridge.__main__:main'],
    },
    zip_safe=False,
)

from setuptools import setup, find_packages

setup(
    name="invoicechain",
    version="0.1.0",
    description="Idempotent extraction, archival and ledger chain for invoice images",
    packages=find_packages(exclude=['tests', 'tests.*']),
    package_data={
        'invoicechain.config': ['default_config.yaml'],
    },
    python_requires='>=3.9',
    install_requires=[
        'anthropic>=0.34.0',
        'boto3',
        'click',
        'Pillow',
        'pydantic>=2.0',
        'pyyaml',
        'sqlalchemy>=2.0',
    ],
    extras_require={
        'test': [
            'pytest',
            'pytest-asyncio',
            'moto[s3]>=5.0',
        ],
    },
    entry_points={
        'console_scripts': [
            'invoicechain=invoicechain.cli:main',
        ],
    },
)

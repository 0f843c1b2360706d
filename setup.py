from setuptools import find_packages, setup


setup(
    name = 'nspawn-driver',
    version = '0.1.0',
    description = 'Run scheduler tasks as systemd-nspawn machines',
    license = 'MIT',
    packages = find_packages(exclude=['tests*']),
    entry_points = {
        'console_scripts': [
            'nspawn-driver = nspawn_driver.__main__:main_entry',
        ],
    },
    install_requires = [
        'PyYAML',
        'SQLAlchemy',
        'startup',
    ],
)

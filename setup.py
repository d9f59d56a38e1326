from setuptools import find_namespace_packages, setup

setup(
    name='spmirror',
    version='0.1.0',
    package_dir={'': 'src'},
    packages=find_namespace_packages(where='src', include=['spmirror', 'spmirror.*']),
    python_requires='>=3.10',
    install_requires=[
        'requests',
        'urllib3',
        'PyYAML',
        'platformdirs',
        'rich',
    ],
    extras_require={
        'test': ['pytest', 'pytest-mock'],
    },
    entry_points={
        'console_scripts': [
            'spmirror=spmirror.cli:main',
        ],
    },
)


import setuptools

setuptools.setup(
    name='triton-cloudapi',
    version='1.0.0',
    description='Interface to the Triton CloudAPI for instances, images, networks, volumes, and RBAC',
    license='MPL-2.0',
    packages=setuptools.find_packages(exclude=['tests', 'tests.*']),
    python_requires='>=3.8',
    classifiers=[
        "Programming Language :: Python :: 3",
        "Operating System :: OS Independent",
    ],
    install_requires=[
        'requests >= 2.27',
        'urllib3 >= 2.0',
        'inflect >= 5.3',
        'milc >= 1.6.6, < 2',
        'pyyaml >= 5.4',
        'platformdirs >= 2.4',
        'tabulate >= 0.8',
        'packaging >= 20.9',
        'pygments >= 2.11',
        'cryptography >= 41.0',
        'paramiko >= 3.0',
    ],
    extras_require={
        'tests': [
            'pytest >= 7.0',
        ],
    },
    entry_points={
        'console_scripts': [
            'triton = tritoncloud.ctl:cli',
        ]
    }
)

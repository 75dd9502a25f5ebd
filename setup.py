from setuptools import setup, find_packages

setup(
    name='stiffode',
    version='0.1.0',
    description='Implicit Radau / BDF integrator for stiff ODEs and DAEs '
                'with pluggable Jacobian and linear-solve strategies',
    package_dir={'': 'src'},
    packages=find_packages(where='src'),
    python_requires='>=3.9',
    install_requires=[
        'torch',
        'numpy',
        'scipy',
    ],
    extras_require={
        'petsc': ['petsc4py'],               # linsolve="petsc"
        'test': ['pytest'],
    },
)

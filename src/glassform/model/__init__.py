"""
The MODEL layer contains plain data structures: material parameters,
boundary conditions, problem definitions, field snapshots and results.
It has no knowledge of assembly or linear algebra.
"""

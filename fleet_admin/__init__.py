"""
Fleet Admin module.

Command-line administration for the CI fleet: instance registration and
maintenance, cluster inspection, and on-demand health checks or sync passes.
"""

"""Setup (provisioning) services.

Helpers that create and tear down the external resources behind a tenant:
the GCP project and folder, the GitHub repository and team.
"""

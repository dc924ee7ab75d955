"""Case portal: case submission, tracking, and two-plane authentication.

Submitters create cases and follow them with emailed one-time codes;
staff log in with passwords and manage cases through a JSON API.

Usage:
    python -m case_portal --config portal.yaml
"""

__version__ = "0.1.0"

"""
Test suite for the control plane.

Each module covers one component; test_api.py drives the HTTP surface
end to end through a TestClient.
"""

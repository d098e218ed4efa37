import os

import requests

base_url = os.environ.get("API_BASE_URL", "http://localhost:5000")
token = os.environ.get("ADMIN_TOKEN", "")
headers = {"Authorization": f"Bearer {token}"} if token else {}

payload = {
    "name": "Earrings",
    "slug": "debug-earrings",
    "description": "Created by debug_catalog.py",
    "image": "https://res.cloudinary.com/demo/image/upload/v1/jewelry/debug-earrings.png",
}

try:
    url = f"{base_url}/admin/api/category"
    print(f"Sending POST request to {url}...")
    response = requests.post(url, json=payload, headers=headers, timeout=10)
    print(f"Status Code: {response.status_code}")
    print("Response Body:")
    print(response.text)

    category = response.json().get("category") or {}
    if category.get("_id"):
        print(f"Sending DELETE request to {url}...")
        response = requests.delete(
            url, json={"id": category["_id"]}, headers=headers, timeout=10
        )
        print(f"Status Code: {response.status_code}")
        print(response.text)
except Exception as e:
    print(f"Error: {e}")

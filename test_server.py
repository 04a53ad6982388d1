import argparse, base64, os, requests

SERVICE_URL = os.environ.get("DISEASE_SERVICE_URL", "http://localhost:8080")
DETECT_URL = f"{SERVICE_URL}/detectDisease"


def print_result(response):
    if response.status_code == 200:
        result = response.json()
        print(f"✅ Disease: {result.get('disease')} (confidence {result.get('confidence'):.4f}) bbox={result.get('bbox')}")
    else:
        print(f"❌ Failed: {response.status_code} - {response.text}")


def predict_image(image_path):
    with open(image_path, "rb") as img_file:
        payload = {"image": base64.b64encode(img_file.read()).decode("utf-8"), "isUrl": False}
    print_result(requests.post(DETECT_URL, json=payload, timeout=60))


def predict_url(image_url):
    payload = {"image": image_url, "isUrl": True}
    print_result(requests.post(DETECT_URL, json=payload, timeout=60))


def run_health_check():
    response = requests.get(f"{SERVICE_URL}/health", timeout=10)
    if response.status_code == 200:
        print(f"✅ Health Check Passed: {response.json()}")
    else:
        print(f"❌ Health Check Failed: {response.status_code} - {response.text}")


if __name__ == "__main__":
    parser = argparse.ArgumentParser()
    parser.add_argument("--image", type=str, help="Path to image to send as base64")
    parser.add_argument("--url", type=str, help="Image URL for the service to fetch")
    parser.add_argument("--test", action="store_true", help="Run health check")

    args = parser.parse_args()

    if args.test:
        print("Running health check...")
        run_health_check()
    elif args.url:
        predict_url(args.url)
    elif args.image:
        if not os.path.exists(args.image):
            print(f"❌ Image not found: {args.image}")
        else:
            predict_image(args.image)
    else:
        print("❌ Please provide --image <path>, --url <url> or --test")

import argparse
import logging
import time

import requests

from .config import setup_logging

# --- Configuration ---
API_URL = 'http://127.0.0.1:5000'
TEST_TIMESTAMP = 1651363200  # May 1, 2022
LOG_FILE = 'performance.log'
NUM_RUNS = 3 # Number of times to run the test for an average
REQUEST_TIMEOUT = 300

logger = logging.getLogger(__name__)


def run_performance_test(api_url, implementation_id, timestamp, session=requests):
    """Sends one uncached request for an implementation, times it, and logs the result."""
    logger.info(f"Starting test run for {implementation_id} at timestamp {timestamp}")
    url = f"{api_url}/api/implementations/{implementation_id}"
    payload = {'timestamp': timestamp, 'useCache': False}
    start_time = time.time()

    try:
        response = session.post(url, json=payload, timeout=REQUEST_TIMEOUT)
        duration = time.time() - start_time
        response.raise_for_status()
        result = response.json()
    except requests.exceptions.Timeout:
        logger.error(f"Test run FAILED for {implementation_id}. Request timed out after {time.time() - start_time:.2f} seconds.")
        return None
    except requests.exceptions.RequestException as e:
        logger.error(f"Test run FAILED for {implementation_id}. Request error: {e}")
        return None
    except ValueError as e:
        logger.error(f"Test run FAILED for {implementation_id}. Response was not JSON: {e}")
        return None

    if 'total_value' not in result:
        logger.error(f"Test run FAILED for {implementation_id}. Unexpected response content.")
        logger.debug(f"Response Text (first 500 chars):\n{response.text[:500]}")
        return None

    logger.info(f"Test run SUCCESSFUL for {implementation_id}. Duration: {duration:.2f} seconds. "
                f"Total: {result['total_value']} ETH across {result.get('holder_count')} holders.")
    return duration


def summarize(durations):
    if not durations:
        return None
    return {
        'runs': len(durations),
        'average': sum(durations) / len(durations),
        'min': min(durations),
        'max': max(durations),
    }


def benchmark(api_url, implementation_ids, timestamp, num_runs=NUM_RUNS, pause=2, session=requests):
    summaries = {}
    for implementation_id in implementation_ids:
        logger.info(f"=== {implementation_id} ===")
        durations = []
        for i in range(num_runs):
            logger.info(f"--- Run {i+1}/{num_runs} ---")
            duration = run_performance_test(api_url, implementation_id, timestamp, session=session)
            if duration is not None:
                durations.append(duration)
            if pause:
                time.sleep(pause) # Small delay between runs

        summary = summarize(durations)
        summaries[implementation_id] = summary
        if summary:
            logger.info(f"Successful runs: {summary['runs']}/{num_runs}")
            logger.info(f"Average Duration: {summary['average']:.2f} seconds")
            logger.info(f"Min Duration: {summary['min']:.2f} seconds")
            logger.info(f"Max Duration: {summary['max']:.2f} seconds")
        else:
            logger.warning(f"No successful runs completed for {implementation_id}.")
    return summaries


def list_implementations(api_url, session=requests):
    response = session.get(f"{api_url}/api/implementations", timeout=30)
    response.raise_for_status()
    return [i['id'] for i in response.json() if i.get('status') == 'implemented']


def main(argv=None):
    parser = argparse.ArgumentParser(prog='powder-benchmark',
                                     description='Time every implementation against a running powder API.')
    parser.add_argument('--url', default=API_URL)
    parser.add_argument('--timestamp', type=int, default=TEST_TIMESTAMP)
    parser.add_argument('--runs', type=int, default=NUM_RUNS)
    parser.add_argument('--implementation', action='append', dest='implementations',
                        help='Implementation id to benchmark (repeatable; default: all)')
    parser.add_argument('--log-file', default=LOG_FILE)
    args = parser.parse_args(argv)

    setup_logging('INFO', log_file=args.log_file)
    logger.info("=== Starting Performance Measurement ===")
    logger.info(f"Target API URL: {args.url}")
    logger.info(f"Timestamp: {args.timestamp}")
    logger.info(f"Number of runs: {args.runs}")

    try:
        implementation_ids = args.implementations or list_implementations(args.url)
    except requests.exceptions.RequestException as e:
        logger.error(f"Could not list implementations: {e}")
        return 1

    summaries = benchmark(args.url, implementation_ids, args.timestamp, num_runs=args.runs)
    logger.info("=== Performance Measurement Finished ===")
    return 0 if any(summaries.values()) else 1


if __name__ == '__main__':
    raise SystemExit(main())

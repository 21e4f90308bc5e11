from trigger.geo import haversine_distance_m
from trigger.poller import LocationPoller, merge_raw_payload

__all__ = ["LocationPoller", "haversine_distance_m", "merge_raw_payload"]

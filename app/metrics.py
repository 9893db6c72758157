from prometheus_client import Counter, Gauge, Histogram

# Seat state store
SEAT_CAS_LATENCY = Histogram("ibbs_seat_cas_latency_seconds", "Latency of seat compare-and-swap round trips")
SEAT_CAS_TOTAL = Counter("ibbs_seat_cas_total", "Seat compare-and-swap attempts", ["result"])

# Holds
SEAT_HOLD_ATTEMPTS = Counter("ibbs_seat_hold_attempts_total", "Seat hold operations", ["operation", "result"])
SEAT_HOLD_LATENCY = Histogram("ibbs_seat_hold_latency_seconds", "Latency for seat hold operations", ["operation"])
SEAT_HOLDS_EXPIRED = Counter("ibbs_seat_holds_expired_total", "Holds released by the expiry sweep")

# Bookings
BOOKING_COMMITS = Counter("ibbs_booking_commits_total", "Booking commit attempts", ["result"])

# Subscriptions
SEAT_SUBSCRIBERS = Gauge("ibbs_seat_subscribers", "Clients subscribed to seat map updates")
SEAT_EVENTS_DELIVERED = Counter("ibbs_seat_events_delivered_total", "Seat diff events fanned out to subscribers")

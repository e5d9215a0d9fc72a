"""OpenCL program executed by every search context."""

from __future__ import annotations

RANGE_KERNEL = "search_for_large_prime"
CANDIDATE_KERNEL = "check_candidates"

KERNEL_SOURCE = r"""
int is_prime(ulong n) {
    if (n <= 1) return 0;
    if (n <= 3) return 1;
    if (n % 2 == 0 || n % 3 == 0) return 0;
    for (ulong i = 5; i <= n / i; i += 6) {
        if (n % i == 0 || n % (i + 2) == 0) return 0;
    }
    return 1;
}

__kernel void search_for_large_prime(__global ulong* result,
                                     __global ulong* status,
                                     ulong start,
                                     ulong end) {
    ulong tid = get_global_id(0);
    ulong step = get_global_size(0);
    for (ulong i = start + tid; i <= end; i += step) {
        status[tid] = i;
        if (is_prime(i)) {
            result[0] = i;
            return;
        }
    }
}

__kernel void check_candidates(__global const ulong* candidates,
                               __global int* results,
                               ulong n) {
    ulong tid = get_global_id(0);
    if (tid < n) {
        results[tid] = is_prime(candidates[tid]);
    }
}
"""
